#!/usr/bin/env python3
"""
serverless_site_sync.py

Publish the client distribution folder to its S3 bucket after a serverless deploy.
The bucket is emptied and every file is uploaded again.

Settings come from serverless.yml (custom.client.bucketName, custom.client.distributionFolder,
provider.stage, provider.region) and can be overridden from the environment:

    BUCKET_NAME, DISTRIBUTION_FOLDER, SERVICE_PATH, SERVERLESS_CONFIG, STAGE,
    AWS_DEFAULT_REGION, CLOUDFRONT_DISTRIBUTION, SYNC_MAX_WORKERS

ON_FAILURE decides what a failed sync does to the job:
    log     - (default) log it and exit 0, the deploy is not failed
    fail    - exit 1
    cancel  - cancel the workflow through the CircleCI API

SITE_SYNC_STATUS=success|failed is exported to BASH_ENV for later steps.
"""
import os
import sys
import typing

sys.path.insert(0, '/home/circleci/bin')

import loggy
from common import (add_bash_exports_to_env, cancel_workflow, get_environ, get_nested,
                    load_serverless_config, push_export_to_env, resolve_pipeline_variable)
from aws import AwsCreds, DEFAULT_MAX_WORKERS
from site_sync import SiteConfig, SyncResult, after_deploy
from sync_errors import ConfigError

ON_FAILURE_MODES = ('log', 'fail', 'cancel')


def _setting(env_name: str, serverless_config: dict, path: str, default=None):
    _value = get_environ(env_name)
    if _value is None:
        _value = get_nested(serverless_config, path, default)
    return resolve_pipeline_variable(_value)


def build_config() -> SiteConfig:
    """
    build_config()

    Read the deploy settings from serverless.yml and the environment.

    Raises ConfigError for an unparseable serverless.yml or a bad SYNC_MAX_WORKERS.
    """
    _SERVICE_PATH = get_environ('SERVICE_PATH', os.getcwd())
    _SERVERLESS_CONFIG = get_environ('SERVERLESS_CONFIG', os.path.join(_SERVICE_PATH, 'serverless.yml'))

    _config = load_serverless_config(_SERVERLESS_CONFIG)

    _region = _setting('AWS_DEFAULT_REGION', _config, 'provider.region')

    _creds = None
    if get_environ('AWS_ACCESS_KEY_ID') and get_environ('AWS_SECRET_ACCESS_KEY'):
        _creds = AwsCreds(access_key=get_environ('AWS_ACCESS_KEY_ID'),
                          secret_access_key=get_environ('AWS_SECRET_ACCESS_KEY'),
                          session_token=get_environ('AWS_SESSION_TOKEN'),
                          region=_region)

    _max_workers = get_environ('SYNC_MAX_WORKERS', str(DEFAULT_MAX_WORKERS))
    try:
        _max_workers = int(_max_workers)
    except ValueError as e:
        raise ConfigError(f"SYNC_MAX_WORKERS must be a number, got {_max_workers}") from e

    return SiteConfig(
        bucket_name=_setting('BUCKET_NAME', _config, 'custom.client.bucketName'),
        distribution_folder=_setting('DISTRIBUTION_FOLDER', _config, 'custom.client.distributionFolder'),
        service_path=_SERVICE_PATH,
        stage=_setting('STAGE', _config, 'provider.stage', 'dev'),
        region=_region,
        creds=_creds,
        distribution_id=_setting('CLOUDFRONT_DISTRIBUTION', _config, 'custom.client.cloudfrontDistribution'),
        max_workers=_max_workers,
    )


def exit_code(result: SyncResult, on_failure: typing.Optional[str] = None) -> int:
    """
    exit_code()

    Turn a SyncResult into the step's exit code according to ON_FAILURE.
    """
    if result.ok:
        return 0

    _mode = (on_failure or 'log').lower()
    if _mode not in ON_FAILURE_MODES:
        loggy.warning(f"serverless_site_sync(): Unknown ON_FAILURE={on_failure}, using log")
        _mode = 'log'

    if _mode == 'fail':
        loggy.error("serverless_site_sync(): Site sync failed, failing the job.")
        return 1

    if _mode == 'cancel':
        loggy.error("serverless_site_sync(): Site sync failed, cancelling the workflow.")
        if not cancel_workflow():
            loggy.error("serverless_site_sync(): ERROR canceling workflow. Killing job.")
            return 1
        return 0

    loggy.warning("serverless_site_sync(): Site sync failed, the deploy itself is not failed. Check the log above.")
    return 0


def main() -> int:
    loggy.info("serverless_site_sync(): BEGIN")

    #
    # Every command should check and load any BASH_ENV exports set from other commands.
    #
    add_bash_exports_to_env()

    try:
        _site_config = build_config()
    except ConfigError as e:
        loggy.error(f"Failed to upload files to s3. Error: {str(e)}")
        _result = SyncResult(ok=False, message=str(e))
    else:
        _result = after_deploy(_site_config)

    push_export_to_env('SITE_SYNC_STATUS', 'success' if _result.ok else 'failed')

    return exit_code(_result, get_environ('ON_FAILURE'))


if __name__ == "__main__":
    sys.exit(main())
