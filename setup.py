from setuptools import setup, find_packages

setup(
    name="nlb-attacher",
    version="0.1.0",
    packages=find_packages(),
    install_requires=[
        "kopf",
        "kubernetes",
        "boto3",
        "flask",
    ],
    entry_points={
        "console_scripts": [
            "nlb-attacher=nlb_attacher.__main__:main",
        ],
    },
    python_requires=">=3.9",
)
