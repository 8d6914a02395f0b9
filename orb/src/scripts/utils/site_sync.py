#!/usr/bin/env python3
"""
site_sync

Publish a local static site folder to an S3 bucket after a deploy.

The bucket is fully cleared and every local file is re-uploaded, keyed by its
path relative to the distribution folder. The stages always run in this order:

    list all objects -> delete them all -> walk the local folder -> upload every file

so an object for a file that was removed locally never survives a deploy.

sync() and after_deploy() never raise SiteSyncError. Failures are logged and
handed back as a SyncResult so the caller decides whether the deploy fails.

Example Usage:
    from site_sync import SiteConfig, after_deploy
    result = after_deploy(SiteConfig(bucket_name="my-site", distribution_folder="client/dist",
                                     service_path="/home/circleci/project", stage="dev",
                                     region="us-east-1"))
"""
import mimetypes
import os
import sys
import typing
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass

sys.path.insert(0, '/home/circleci/bin')

import loggy
import aws
from aws import AwsCreds, DEFAULT_MAX_WORKERS
from sync_errors import ConfigError, LocalIOError, RemoteError, SiteSyncError


@dataclass
class SiteConfig:
    """Settings for one deploy, as read from serverless.yml and the environment. Not yet validated."""
    bucket_name: typing.Optional[str] = None
    distribution_folder: typing.Optional[str] = None
    service_path: typing.Optional[str] = None
    stage: typing.Optional[str] = None
    region: typing.Optional[str] = None
    creds: typing.Optional[AwsCreds] = None
    distribution_id: typing.Optional[str] = None
    max_workers: int = DEFAULT_MAX_WORKERS


@dataclass(frozen=True)
class SyncTarget:
    """A validated SiteConfig. local_root is absolute and exists."""
    bucket_name: str
    local_root: str
    region: typing.Optional[str] = None
    stage: typing.Optional[str] = None
    creds: typing.Optional[AwsCreds] = None
    distribution_id: typing.Optional[str] = None
    max_workers: int = DEFAULT_MAX_WORKERS


class LocalFileEntry(typing.NamedTuple):
    absolute_path: str
    relative_path: str


@dataclass
class SyncResult:
    ok: bool
    message: str
    deleted: int = 0
    uploaded: int = 0
    website_url: typing.Optional[str] = None


def validate(config: SiteConfig) -> SyncTarget:
    """
    validate()

    Check the deploy settings before anything talks to AWS.

    Raises ConfigError when the bucket name or distribution folder is missing, or when
    the distribution folder doesn't exist under service_path. The folder is always joined
    onto service_path, so "/client/dist" means service_path/client/dist.

    Returns: SyncTarget
    """
    if not config.bucket_name:
        raise ConfigError("Please specify a bucket name for the client in serverless.yml.")

    if not config.distribution_folder:
        raise ConfigError("Please specify a distribution folder for the client in serverless.yml.")

    if config.max_workers is None or config.max_workers < 1:
        raise ConfigError(f"max_workers must be at least 1, got {config.max_workers}.")

    service_path = config.service_path or os.getcwd()
    # the folder is always taken relative to service_path, even when written as "/dist"
    client_path = os.path.abspath(os.path.join(service_path, config.distribution_folder.lstrip("/\\")))

    if not os.path.isdir(client_path):
        raise ConfigError(f"Could not find {client_path} folder in your project root.")

    return SyncTarget(
        bucket_name=config.bucket_name,
        local_root=client_path,
        region=config.region,
        stage=config.stage,
        creds=config.creds,
        distribution_id=config.distribution_id,
        max_workers=config.max_workers,
    )


def relative_key(root: str, absolute_path: str, pathmod=os.path) -> str:
    """
    relative_key()

    Object key for a local file: the path with root and one separator stripped off,
    separators turned into forward slashes. pathmod is os.path unless you need the
    rules of another platform (ntpath, posixpath).
    """
    _root = pathmod.normpath(root)
    _path = pathmod.normpath(absolute_path)
    prefix = _root if _root.endswith(pathmod.sep) else _root + pathmod.sep

    if not _path.startswith(prefix):
        raise LocalIOError(f"{absolute_path} is not inside {root}", path=absolute_path)

    return _path[len(prefix):].replace(pathmod.sep, '/').replace('\\', '/')


def _raise_walk_error(error: OSError):
    raise LocalIOError(f"Could not read {error.filename}: {error.strerror}", path=error.filename) from error


def list_local_files(root: str) -> typing.List[LocalFileEntry]:
    """
    list_local_files()

    Every file under root, recursively, sorted. Directories themselves are not returned
    and directory symlinks are not followed.
    """
    entries = []
    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise_walk_error):
        dirnames.sort()
        for name in sorted(filenames):
            absolute_path = os.path.join(dirpath, name)
            entries.append(LocalFileEntry(absolute_path, relative_key(root, absolute_path)))

    loggy.info(f"site_sync.list_local_files(): Found {len(entries)} files under {root}")
    return entries


def _upload_file(client, s3_bucket: str, entry: LocalFileEntry) -> str:
    try:
        with open(entry.absolute_path, 'rb') as file_pointer:
            body = file_pointer.read()
    except OSError as e:
        raise LocalIOError(f"Could not read {entry.absolute_path}: {e.strerror or str(e)}", path=entry.absolute_path) from e

    content_type, _ = mimetypes.guess_type(entry.absolute_path)
    aws.s3_put_object(client, s3_bucket, entry.relative_path, body, content_type)
    loggy.debug(f"site_sync._upload_file(): Uploaded {entry.relative_path} ({content_type})")
    return entry.relative_path


def upload_all(client, target: SyncTarget, files: typing.Optional[typing.List[LocalFileEntry]] = None, fail_fast: bool = False) -> int:
    """
    upload_all()

    Upload every local file on a pool of target.max_workers threads.

    One failed upload doesn't stop the others. When they have all finished the first
    failure is raised again, saying how many failed. With fail_fast=True the uploads
    that haven't started yet are cancelled at the first failure.

    Returns: number of files uploaded
    """
    files = list_local_files(target.local_root) if files is None else files
    if not files:
        loggy.info(f"site_sync.upload_all(): Nothing to upload from {target.local_root}")
        return 0

    uploaded = 0
    failures = []
    with ThreadPoolExecutor(max_workers=max(1, min(target.max_workers, len(files)))) as pool:
        futures = [pool.submit(_upload_file, client, target.bucket_name, entry) for entry in files]
        for future in as_completed(futures):
            try:
                future.result()
                uploaded += 1
            except SiteSyncError as e:
                loggy.error(f"site_sync.upload_all(): {str(e)}")
                failures.append(e)
                if fail_fast:
                    for pending in futures:
                        pending.cancel()
                    break

    if failures:
        first = failures[0]
        message = f"{len(failures)} of {len(files)} uploads failed. First error: {str(first)}"
        if isinstance(first, LocalIOError):
            raise LocalIOError(message, path=first.path) from first
        raise RemoteError(message, operation=getattr(first, 'operation', None), key=getattr(first, 'key', None)) from first

    return uploaded


def sync(target: SyncTarget, client=None) -> SyncResult:
    """
    sync()

    Clear the bucket and upload the distribution folder, then invalidate CloudFront
    when target.distribution_id is set.

    client: an S3 client to use instead of building one from target.creds

    Returns: SyncResult, ok=False with the error message on any failure
    """
    bucket = target.bucket_name
    loggy.info(f'Deploying files to stage "{target.stage}" in region "{target.region or "default"}"...')

    deleted = 0
    uploaded = 0
    session = None
    try:
        if client is None:
            session = aws.init_session(target.creds)
            client = aws.s3_client(session, target.region)

        keys = aws.s3_list_all_objects(client, bucket)
        deleted = aws.s3_delete_objects(client, bucket, keys, target.max_workers)
        loggy.info(f'Cleared {deleted} objects from bucket "{bucket}".')

        files = list_local_files(target.local_root)
        uploaded = upload_all(client, target, files)

        if target.distribution_id:
            session = aws.init_session(target.creds) if session is None else session
            aws.cloudfront_create_invalidation(target.distribution_id, session=session)
    except SiteSyncError as e:
        loggy.error(f"Failed to upload files to s3. Error: {str(e)}")
        return SyncResult(ok=False, message=str(e), deleted=deleted, uploaded=uploaded)

    website_url = aws.s3_website_url(bucket, target.region)
    message = f'Uploaded {uploaded} files to bucket "{bucket}".'
    loggy.info(message)
    if website_url:
        loggy.info(f"Site available at {website_url}")

    return SyncResult(ok=True, message=message, deleted=deleted, uploaded=uploaded, website_url=website_url)


def after_deploy(config: SiteConfig, client=None) -> SyncResult:
    """
    after_deploy()

    The post-deploy hook: validate the settings, then sync. A bad config is logged and
    returned as a failed SyncResult without calling AWS.
    """
    try:
        target = validate(config)
    except ConfigError as e:
        loggy.error(f"Failed to upload files to s3. Error: {str(e)}")
        return SyncResult(ok=False, message=str(e))

    return sync(target, client=client)
