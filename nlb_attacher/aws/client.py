import boto3
from botocore.config import Config
import logging
import time
import os
from botocore.exceptions import BotoCoreError, ClientError

# Constants
AWS_RETRY_ATTEMPTS = 3
AWS_RETRY_DELAY = 1  # seconds

# Error codes worth retrying in place; everything else goes back to the work queue
THROTTLING_ERROR_CODES = frozenset([
    'Throttling',
    'ThrottlingException',
    'RequestLimitExceeded',
    'TooManyRequestsException',
])

# Configure AWS client with retries
aws_config = Config(
    retries=dict(
        max_attempts=AWS_RETRY_ATTEMPTS
    )
)

# Configure to use regional STS endpoints for IRSA
if os.environ.get('AWS_DEFAULT_REGION'):
    os.environ['AWS_STS_REGIONAL_ENDPOINTS'] = 'regional'

logger = logging.getLogger(__name__)


def get_credentials(session=None):
    """
    Resolve credentials through boto3's chain (IRSA web identity, node
    instance profile, environment, shared credentials file).

    Returns None, with a warning, when nothing in the chain resolves.
    """
    session = session or boto3.Session()
    try:
        credentials = session.get_credentials()
    except BotoCoreError as e:
        logger.error(f"Error resolving AWS credentials: {str(e)}")
        return None
    if credentials is None:
        logger.warning("No AWS credentials found in the credential chain")
        return None
    logger.debug(f"Using AWS credentials from {getattr(credentials, 'method', 'unknown source')}")
    return credentials


def get_elbv2_client(region=None):
    """Create the ELBv2 client the controller registers targets with.

    The client comes from the session itself rather than from copied keys, so
    refreshable credentials such as IRSA tokens keep renewing for the life of
    the process.

    Args:
        region (str, optional): Falls back to AWS_DEFAULT_REGION, then to boto3's own lookup.
    """
    session = boto3.Session(region_name=region or os.environ.get('AWS_DEFAULT_REGION'))
    if get_credentials(session) is None:
        logger.warning("Creating ELBv2 client without credentials, AWS calls will fail until some are available")
    logger.info(f"Creating ELBv2 client in region {session.region_name}")
    return session.client('elbv2', config=aws_config)


def error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


def retry_aws_operation(operation_func, *args, **kwargs):
    """
    Retry a read-only AWS operation with exponential backoff while it is throttled.
    Returns the result of the operation or raises the last exception.
    """
    for attempt in range(AWS_RETRY_ATTEMPTS):
        try:
            return operation_func(*args, **kwargs)
        except ClientError as e:
            if error_code(e) not in THROTTLING_ERROR_CODES or attempt == AWS_RETRY_ATTEMPTS - 1:
                raise
            wait_time = (2 ** attempt) * AWS_RETRY_DELAY
            logger.warning(f"AWS operation throttled, retrying in {wait_time}s: {str(e)}")
            time.sleep(wait_time)
