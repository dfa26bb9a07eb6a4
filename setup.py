"""
sttqueue: setuptools build script.

Usage:
    # Development (editable install):
    pip install -e .

    # Run a worker:
    sttqueue worker
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "sttqueue"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Asynchronous speech-to-text job queue (ffmpeg + whisper.cpp)",
    packages=find_namespace_packages(include=["sttqueue", "sttqueue.*"]),
    install_requires=[
        "requests>=2.28.0",
    ],
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "sttqueue=sttqueue.cli:main",
        ],
    },
)
