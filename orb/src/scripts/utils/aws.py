#!/usr/bin/env python3
"""
aws

Common code useful for AWS functions used by the site sync step.

Every boto3/botocore failure is re-raised as sync_errors.RemoteError so callers
only need to handle one exception type.

Example Usage:
    from utils import aws
    from utils.aws import init_session, s3_client, s3_list_all_objects
"""
import os
import sys
import time
import typing
from concurrent.futures import ThreadPoolExecutor

import boto3
from botocore.exceptions import BotoCoreError, ClientError

sys.path.insert(0, '/home/circleci/bin')

import loggy
from sync_errors import RemoteError

# DeleteObjects accepts at most 1000 keys per request
S3_DELETE_BATCH_SIZE = 1000

DEFAULT_MAX_WORKERS = 16

S3_WEBSITE_ENDPOINTS = {
    'us-east-2': 's3-website.us-east-2.amazonaws.com',
    'us-east-1': 's3-website-us-east-1.amazonaws.com',
    'us-west-1': 's3-website-us-west-1.amazonaws.com',
    'us-west-2': 's3-website-us-west-2.amazonaws.com',
    'ca-central-1': 's3-website.ca-central-1.amazonaws.com',
    'ap-south-1': 's3-website.ap-south-1.amazonaws.com',
    'ap-northeast-2': 's3-website.ap-northeast-2.amazonaws.com',
    'ap-southeast-1': 's3-website-ap-southeast-1.amazonaws.com',
    'ap-southeast-2': 's3-website-ap-southeast-2.amazonaws.com',
    'ap-northeast-1': 's3-website-ap-northeast-1.amazonaws.com',
    'eu-central-1': 's3-website.eu-central-1.amazonaws.com',
    'eu-west-1': 's3-website-eu-west-1.amazonaws.com',
    'eu-west-2': 's3-website.eu-west-2.amazonaws.com',
    'eu-west-3': 's3-website.eu-west-3.amazonaws.com',
    'sa-east-1': 's3-website-sa-east-1.amazonaws.com',
}


class AwsCreds():
    access_key = None
    secret_access_key = None
    session_token = None
    region = None

    def __init__(self,
                 access_key: typing.Optional[str] = None,
                 secret_access_key: typing.Optional[str] = None,
                 session_token: typing.Optional[str] = None,
                 region: typing.Optional[str] = None):
        self.access_key = access_key
        self.secret_access_key = secret_access_key
        self.session_token = session_token
        self.region = region

    def __repr__(self):
        # never print the secret
        return f"AwsCreds(access_key={self.access_key!r}, region={self.region!r})"

    def __eq__(self, other):
        if not isinstance(other, AwsCreds):
            return NotImplemented
        return (self.access_key, self.secret_access_key, self.session_token, self.region) == \
            (other.access_key, other.secret_access_key, other.session_token, other.region)

    def __hash__(self):
        return hash((self.access_key, self.secret_access_key, self.session_token, self.region))

    def is_set(self) -> bool:
        return bool(self.access_key and self.secret_access_key)


class AwsSession():
    session = None
    creds = None
    name = None

    def __init__(self, name):
        self.creds = AwsCreds()
        self.name = name
        self.session = None


"""
Global Utils
"""


def _new_session(**kwargs):
    # a missing profile or unreadable config file surfaces here
    try:
        return boto3.Session(**kwargs)
    except BotoCoreError as e:
        raise RemoteError(f"Could not create AWS session: {str(e)}", operation="session") from e


def init_session(creds: typing.Optional[AwsCreds] = None) -> AwsSession:
    """
    init_session()

    This function initializes a boto3 AWS session for use in boto3 clients.

    Explicit creds passed in by the deploy step win. Otherwise the pipeline environment
    is used, preferring an IAM Role before attempting to use IAM User Keys, and finally
    the default boto3 credential chain.

    Returns a reusable AwsSession object
    """
    _s = AwsSession("site-sync")
    _region = (creds.region if creds and creds.region else None) or os.environ.get('AWS_DEFAULT_REGION', 'us-east-1')

    if creds is not None and creds.is_set():
        loggy.info("aws.init_session(): Generating boto3 session from deploy credentials")
        _s.creds = AwsCreds(creds.access_key, creds.secret_access_key, creds.session_token, _region)

    elif os.environ.get('AWS_ROLE_ARN'):
        loggy.info("aws.init_session(): Generating boto3 session from Iam Role and Web Identity Token File")

        web_identity_token = os.environ.get('CIRCLE_OIDC_TOKEN_V2')

        if os.environ.get('AWS_WEB_IDENTITY_TOKEN_FILE'):
            try:
                with open(os.getenv("AWS_WEB_IDENTITY_TOKEN_FILE"), "r") as content_file:
                    web_identity_token = content_file.read()
            except OSError as e:
                raise RemoteError(f"Could not read AWS_WEB_IDENTITY_TOKEN_FILE: {str(e)}",
                                  operation="assume_role_with_web_identity") from e

        if not web_identity_token:
            raise RemoteError("No CIRCLE_OIDC_TOKEN_V2 or AWS_WEB_IDENTITY_TOKEN_FILE found. Cannot log into AWS.",
                              operation="assume_role_with_web_identity")

        try:
            sts_client = boto3.client('sts', region_name=_region)
            assumed_role_object = sts_client.assume_role_with_web_identity(
                RoleArn=os.environ.get('AWS_ROLE_ARN'),
                WebIdentityToken=web_identity_token,
                RoleSessionName="AssumeRoleSessionSiteSync"
            )
        except (BotoCoreError, ClientError) as e:
            raise RemoteError(f"Could not assume {os.environ.get('AWS_ROLE_ARN')}: {str(e)}",
                              operation="assume_role_with_web_identity") from e

        credentials = assumed_role_object['Credentials']
        _s.creds = AwsCreds(credentials['AccessKeyId'], credentials['SecretAccessKey'],
                            credentials['SessionToken'], _region)

    elif os.environ.get('AWS_PROFILE'):
        loggy.info("aws.init_session(): Generating boto3 session from AWS_PROFILE")
        _s.creds.region = _region
        _s.session = _new_session(profile_name=os.environ.get('AWS_PROFILE'), region_name=_region)
        return _s

    elif os.environ.get('AWS_ACCESS_KEY_ID') and os.environ.get('AWS_SECRET_ACCESS_KEY'):
        loggy.info("aws.init_session(): Generating boto3 session from accesskey and secret")
        _s.creds = AwsCreds(os.environ.get('AWS_ACCESS_KEY_ID'),
                            os.environ.get('AWS_SECRET_ACCESS_KEY'),
                            os.environ.get('AWS_SESSION_TOKEN'),
                            _region)

    else:
        loggy.info("aws.init_session(): Generating boto3 session from the default credential chain")
        _s.creds.region = _region
        _s.session = _new_session(region_name=_region)
        return _s

    _s.session = _new_session(
        aws_access_key_id=_s.creds.access_key,
        aws_secret_access_key=_s.creds.secret_access_key,
        aws_session_token=_s.creds.session_token,
        region_name=_s.creds.region
    )
    return _s


"""
S3 Utils
"""


def s3_client(session: typing.Optional[AwsSession] = None, region: typing.Optional[str] = None):
    """
    s3_client()

    Build the S3 client used for a whole sync. boto3 clients are thread safe, sessions
    are not, so build this on the calling thread and share it with the workers.

    returns: boto3 S3 client
    """
    _s = init_session() if session is None else session
    loggy.info(f"aws.s3_client(): BEGIN (using session named: {_s.name}, region: {region})")
    try:
        _r = _s.session.region_name if region is None else region
        return _s.session.client('s3', region_name=_r)
    except (BotoCoreError, ClientError) as e:
        raise RemoteError(f"Could not create S3 client: {str(e)}", operation="client") from e


def s3_list_all_objects(client, s3_bucket: str) -> typing.List[str]:
    """
    s3_list_all_objects()

    List every object key in the bucket, following list_objects_v2 continuation tokens
    until S3 reports there are no more pages.

    client: boto3 S3 client
    s3_bucket: the bucket name (no s3:// prefix)

    Returns: list of keys in listing order, without duplicates
    """
    loggy.info(f"aws.s3_list_all_objects(): Listing s3://{s3_bucket}")

    keys = []
    seen = set()
    pages = 0
    try:
        paginator = client.get_paginator('list_objects_v2')
        for page in paginator.paginate(Bucket=s3_bucket):
            pages += 1
            for obj in page.get('Contents', []):
                if obj['Key'] in seen:
                    continue
                seen.add(obj['Key'])
                keys.append(obj['Key'])
    except (BotoCoreError, ClientError) as e:
        raise RemoteError(f"Could not list objects in {s3_bucket}: {str(e)}", operation="list_objects_v2") from e

    loggy.info(f"aws.s3_list_all_objects(): Found {len(keys)} objects in {pages} page(s)")
    return keys


def _s3_delete_batch(client, s3_bucket: str, batch: typing.List[str]) -> int:
    try:
        response = client.delete_objects(
            Bucket=s3_bucket,
            Delete={
                'Objects': [{'Key': key} for key in batch],
                'Quiet': True
            }
        )
    except (BotoCoreError, ClientError) as e:
        raise RemoteError(f"Could not delete objects from {s3_bucket}: {str(e)}", operation="delete_objects") from e

    errors = response.get('Errors', [])
    if errors:
        first = errors[0]
        raise RemoteError(f"Failed to delete {len(errors)} object(s) from {s3_bucket}, "
                          f"first was {first.get('Key')}: {first.get('Code')} {first.get('Message')}",
                          operation="delete_objects",
                          key=first.get('Key'))

    loggy.debug(f"aws._s3_delete_batch(): Deleted {len(batch)} objects from {s3_bucket}")
    return len(batch)


def s3_delete_objects(client, s3_bucket: str, keys: typing.List[str], max_workers: int = DEFAULT_MAX_WORKERS) -> int:
    """
    s3_delete_objects()

    Delete the given keys with DeleteObjects, 1000 keys per request, batches issued on a
    bounded thread pool. Nothing is rolled back if a batch fails.

    client: boto3 S3 client
    s3_bucket: the bucket name
    keys: object keys to delete
    max_workers: upper bound on concurrent requests

    Returns: number of keys deleted
    """
    if not keys:
        loggy.info(f"aws.s3_delete_objects(): s3://{s3_bucket} is already empty")
        return 0

    batches = [keys[i:i + S3_DELETE_BATCH_SIZE] for i in range(0, len(keys), S3_DELETE_BATCH_SIZE)]
    loggy.info(f"aws.s3_delete_objects(): Deleting {len(keys)} objects from s3://{s3_bucket} in {len(batches)} batch(es)")

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(batches)))) as pool:
        futures = [pool.submit(_s3_delete_batch, client, s3_bucket, batch) for batch in batches]
        return sum(future.result() for future in futures)


def s3_put_object(client, s3_bucket: str, key: str, body: bytes, content_type: typing.Optional[str] = None) -> None:
    """
    s3_put_object()

    Upload one object. ContentType is only sent when we have one, so S3 falls back to
    its own default otherwise.
    """
    params = {
        'Bucket': s3_bucket,
        'Key': key,
        'Body': body,
    }
    if content_type:
        params['ContentType'] = content_type

    try:
        client.put_object(**params)
    except (BotoCoreError, ClientError) as e:
        raise RemoteError(f"Could not upload {key} to {s3_bucket}: {str(e)}", operation="put_object", key=key) from e


def s3_website_url(s3_bucket: str, region: typing.Optional[str]) -> typing.Optional[str]:
    """
    s3_website_url()

    Returns the S3 static website URL for the bucket, or None for a region we don't
    have an endpoint for.
    """
    endpoint = S3_WEBSITE_ENDPOINTS.get(region)
    if not endpoint:
        return None
    return f"http://{s3_bucket}.{endpoint}"


"""
CloudFront Utils
"""


def cloudfront_create_invalidation(dist: str, items: typing.Optional[list] = None, session: typing.Optional[AwsSession] = None, region: typing.Optional[str] = None) -> str:
    """
    cloudfront_create_invalidation()

    Create an invalidation on a CloudFront distribution.

    dist: String Distribution ID
    items: List of paths. Defaults to ["/*"]. (i.e. ["/hello", "/path/to/file", "/another/*"])
    session: will use a different session to build the client

    returns invalidation_id (String)
    """
    _s = init_session() if session is None else session
    _r = _s.session.region_name if region is None else region
    _items = ["/*"] if not items else items
    loggy.info(f"aws.cloudfront_create_invalidation(): BEGIN (using session named: {_s.name})")

    try:
        client = _s.session.client('cloudfront', region_name=_r)
        response = client.create_invalidation(
            DistributionId=dist,
            InvalidationBatch={
                'Paths': {
                    'Quantity': len(_items),
                    'Items': _items
                },
                'CallerReference': str(time.time()).replace(".", "")
            }
        )
    except (BotoCoreError, ClientError) as e:
        raise RemoteError(f"Could not invalidate {dist}: {str(e)}", operation="create_invalidation") from e

    invalidation_id = response['Invalidation']['Id']
    loggy.info(f"aws.cloudfront_create_invalidation(): Invalidation ID: {invalidation_id}")
    return invalidation_id
