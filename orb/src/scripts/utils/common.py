#!/usr/bin/env python3
"""
common

Common functions shared by the orb scripts: environment handling, passing
values between pipeline steps, and reading serverless.yml.

Example Usage:
    from utils import common
    from common import get_environ, load_serverless_config
"""
import os
import re
import sys
import typing

import requests
import yaml

sys.path.insert(0, '/home/circleci/bin')

import loggy
from sync_errors import ConfigError

_VARIABLE_PATTERN = re.compile(r'\$\{(.+?)\}')


def cancel_workflow() -> bool:
    _CIRCLE_WORKFLOW_ID = get_environ('CIRCLE_WORKFLOW_ID')
    _PIPELINE_TRIGGER_TOKEN = get_environ('PIPELINE_TRIGGER_TOKEN')
    if not _CIRCLE_WORKFLOW_ID or not _PIPELINE_TRIGGER_TOKEN:
        loggy.info("common.cancel_workflow(): Pipeline error. One of CIRCLE_WORKFLOW_ID or PIPELINE_TRIGGER_TOKEN not set on environment.")
        loggy.info(f"common.cancel_workflow(): Available ENV vars: {', '.join(sorted(os.environ.keys()))}")
        return False

    loggy.info(f"common.cancel_workflow(): Cancelling workflow: https://circleci.com/api/v2/workflow/{_CIRCLE_WORKFLOW_ID}/cancel")
    try:
        x = requests.post(f"https://circleci.com/api/v2/workflow/{_CIRCLE_WORKFLOW_ID}/cancel",
                          headers={"Circle-Token": _PIPELINE_TRIGGER_TOKEN},
                          timeout=30)
    except requests.RequestException as e:
        loggy.error(f"common.cancel_workflow(): ERROR canceling workflow. {str(e)}")
        return False

    if x.status_code != 202:
        loggy.info(f"common.cancel_workflow():  ERROR canceling workflow. {x.text}")
        return False

    return True


def get_environ(variable: str, default: typing.Optional[str] = None) -> str:
    """
    get_environ()

    This handles getting environnent variables better than the standard os.environ.get()
    There's a case where the ENV var could exist but it is empty, thus it should return the default val.

    Returns: String
    """
    _VAL = os.environ.get(variable, default)
    if not _VAL:
        return default
    return _VAL


def _lookup_variable(expression: str) -> typing.Optional[str]:
    # "env:NAME, 'fallback'" -> value of NAME, else fallback
    name, _, fallback = expression.partition(',')
    name = name.strip()
    fallback = fallback.strip().strip('\'"') if fallback else None

    for prefix in ('env:', 'opt:'):
        if name.startswith(prefix):
            name = name[len(prefix):]

    # self:, file:, ssm: and friends can only be resolved by the framework
    if ':' in name:
        return fallback

    value = get_environ(name)
    if value is None:
        value = get_environ(name.upper())
    return value if value is not None else fallback


def resolve_pipeline_variable(param):
    """
    resolve_pipeline_variable()

    Pipeline and serverless.yml variables could get passed in as a literal string.
    Quickly check, resolve and pass back the true environment variable content.
    The `literal string` could be a variable surrounded by characters.

    Examples:
        * $ENV_NAME
        * ${ENV_NAME}
        * my_${env:ENV_NAME}
        * ${opt:stage, 'dev'}
        * hello${ENV_NAME}goodbye

    Any reference that can't be resolved is left in place.

    param: String containing potential env variable

    Returns: String containing resolved env variable or original param if it can't resolve
    """
    if not isinstance(param, str):
        return param

    _param = None

    if "${" in param and "}" in param:
        def _replace(match):
            value = _lookup_variable(match.group(1))
            return match.group(0) if value is None else value

        _param = _VARIABLE_PATTERN.sub(_replace, param)
    elif param.startswith("$"):
        _param = get_environ(param[1:])

    return _param if _param is not None else param


def add_bash_exports_to_env(file: typing.Optional[str] = None) -> bool:
    """
    add_bash_exports_to_env()

    Given a file with exports in it (i.e. circleCI BASH_ENV file), read in each export and add them to current os.environ

    file: Path to file with exports inside

    Returns: True/False
    """
    loggy.info("common.add_bash_exports_to_env(): BEGIN")

    if not file:
        file = get_environ('BASH_ENV')

    if not file or not os.path.exists(file):
        loggy.debug("common.add_bash_exports_to_env(): No BASH_ENV file found, nothing to load")
        return False

    if os.stat(file).st_size != 0:
        with open(file, 'r') as _BASH_ENV:
            for _line in _BASH_ENV.readlines():
                if _line.startswith('export ') and '=' in _line:
                    _var, _val = _line.strip().split('export ', 1)[1].split('=', 1)[:2]
                    loggy.info(f"common.add_bash_exports_to_env(): Adding ({_var}) to os.environ")
                    os.environ[_var] = _val.strip('"')

    return True


def push_export_to_env(export_name: str, export_value: str, file: typing.Optional[str] = None) -> bool:
    """
    push_export_to_env()

    Push an export to an environment file. i.e. circleCI BASH_ENV file.

    export_name: String containing desired variable name i.e. "SITE_SYNC_STATUS"
    export_value: String containing desired variable value i.e. "success"
    file: (Optional) Path to file with exports inside. Will default to BASH_ENV for circleCI

    Returns: True/False
    """
    loggy.info(f"common.push_export_to_env(): Exporting {export_name}")

    if not file:
        file = get_environ('BASH_ENV')
    if not file:
        loggy.info("common.push_export_to_env(): BASH_ENV not set, skipping export")
        return False

    with open(file, "a") as _SAVE_BASH_ENV:
        _SAVE_BASH_ENV.write(f"export {export_name}=\"{export_value}\"\n")
    return True


class _ServerlessLoader(yaml.SafeLoader):
    pass


def _construct_cfn_tag(loader, tag_suffix, node):
    # !Ref, !GetAtt, !Sub ... load as their plain value
    if isinstance(node, yaml.ScalarNode):
        return loader.construct_scalar(node)
    if isinstance(node, yaml.SequenceNode):
        return loader.construct_sequence(node, deep=True)
    return loader.construct_mapping(node, deep=True)


_ServerlessLoader.add_multi_constructor('!', _construct_cfn_tag)


def load_serverless_config(path: str) -> dict:
    """
    load_serverless_config()

    Read a serverless.yml into a dict. CloudFormation short-form tags are accepted
    and loaded as plain values. A missing file returns an empty dict so settings
    can come from the environment alone.

    path: path to serverless.yml

    Returns: dict
    """
    if not os.path.isfile(path):
        loggy.info(f"common.load_serverless_config(): {path} not found, using environment only")
        return {}

    try:
        with open(path, 'r') as _config_file:
            _config = yaml.load(_config_file, Loader=_ServerlessLoader)
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {path}: {str(e)}") from e

    if _config is None:
        return {}
    if not isinstance(_config, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}")
    return _config


def get_nested(mapping: typing.Optional[dict], path: str, default=None):
    """
    get_nested()

    Walk a dotted path through nested dicts. i.e. get_nested(config, "custom.client.bucketName")

    Returns the value, or default when any level is missing.
    """
    _current = mapping
    for _part in path.split('.'):
        if not isinstance(_current, dict) or _part not in _current:
            return default
        _current = _current[_part]
    return default if _current is None else _current
