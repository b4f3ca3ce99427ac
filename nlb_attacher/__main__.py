"""
Entry point: runs the kopf operator with the nlb-attacher handlers registered.
"""

import argparse
import os

import kopf

from . import handlers  # noqa: F401  registers the kopf handlers


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="nlb-attacher", description="Attach labelled pods to AWS target groups")
    parser.add_argument(
        '--namespace',
        default=os.getenv('WATCH_NAMESPACE', ''),
        help="Only watch pods in this namespace (default: all namespaces)",
    )
    parser.add_argument(
        '--liveness',
        default=None,
        help="kopf liveness endpoint, e.g. http://0.0.0.0:8081/healthz",
    )
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    # The resync lists the same namespace the watch is restricted to
    os.environ['WATCH_NAMESPACE'] = args.namespace
    kopf.run(
        standalone=True,
        clusterwide=not args.namespace,
        namespaces=[args.namespace] if args.namespace else [],
        liveness_endpoint=args.liveness,
    )


if __name__ == '__main__':
    main()
