#!/usr/bin/env python3
"""
loggy

Single-line logging sink for the site sync pipeline steps. Everything goes to
stdout so CircleCI shows it in the step output.

LOG_LEVEL on the environment overrides the default INFO level.

Example Usage:
    from utils import loggy
    loggy.info("site_sync.sync(): BEGIN")
"""
import logging
import os
import sys

logging.basicConfig(
    stream=sys.stdout,
    format="%(levelname)s %(asctime)s - %(message)s",
    level=getattr(logging, os.environ.get('LOG_LEVEL', 'INFO').upper(), logging.INFO)
)
loggy = logging.getLogger("site_sync")

# botocore is chatty at INFO, one line per request
logging.getLogger("botocore").setLevel(logging.WARNING)
logging.getLogger("urllib3").setLevel(logging.WARNING)


def debug(msg):
    """
    debug()

    Log a DEBUG message to stdout
    """
    loggy.debug(msg)


def info(msg):
    """
    info()

    Log an INFO message to stdout
    """
    loggy.info(msg)


def warn(msg):
    """
    warn()

    Log a WARNING message to stdout
    """
    loggy.warning(msg)


def warning(msg):
    """
    warning()

    Log a WARNING message to stdout
    """
    loggy.warning(msg)


def error(msg):
    """
    error()

    Log an ERROR message to stdout
    """
    loggy.error(msg)
