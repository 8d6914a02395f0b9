#!/usr/bin/env python3
"""
sync_errors

Exceptions raised while publishing a site to S3. Everything derives from
SiteSyncError so site_sync.sync() can catch one type.
"""
import typing


class SiteSyncError(Exception):
    """Base exception for the site sync pipeline."""
    pass


class ConfigError(SiteSyncError):
    """
    Missing bucket name, missing distribution folder, or the distribution
    folder does not exist. Raised before any call to AWS.
    """
    pass


class RemoteError(SiteSyncError):
    """
    Any failure coming back from S3 or CloudFront.

    Attributes:
        operation: the API call that failed, i.e. "list_objects_v2"
        key: the object key involved, when there is one
    """

    def __init__(self, message: str, operation: typing.Optional[str] = None, key: typing.Optional[str] = None):
        self.operation = operation
        self.key = key
        super().__init__(message)


class LocalIOError(SiteSyncError):
    """A local file could not be read at upload time."""

    def __init__(self, message: str, path: typing.Optional[str] = None):
        self.path = path
        super().__init__(message)
