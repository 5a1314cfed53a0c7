#!/usr/bin/env python3
"""
tagwatch: automated container image update controller

Watches registries on cron-style schedules, decides through per-image
policies whether a new tag or digest is an update, optionally waits for
approvals, and records applied updates in a state file.
"""

__version__ = "1.0.0"

import argparse
import json
import logging
import os
import signal
import sys
import threading
from typing import Any, Dict, Optional

import jsonschema

from approvals import (ApprovalError, ApprovalManager, DEFAULT_EXPIRY_INTERVAL,
                       JsonApprovalStore)
from credentials import CredentialsHelpers, DockerConfigHelper, StaticCredentialsHelper
from poll import DEFAULT_SCAN_INTERVAL, PollManager, RepositoryWatcher
from policy import PolicyError, validate_regex
from providers import ConfigProvider, Providers
from registry import RegistryClient

logger = logging.getLogger('tagwatch')

DEFAULT_APPROVALS_FILE = 'tagwatch_approvals.json'
DEFAULT_DOCKER_CONFIG = '~/.docker/config.json'

_NOTIFIER_SCHEMA = {
    "type": "object",
    "properties": {
        "url": {"type": "string"},
        "method": {"type": "string", "enum": ["POST", "PUT", "post", "put"]},
        "priority": {"type": "string"},
        "headers": {"type": "object", "additionalProperties": {"type": "string"}},
        "body_template": {"type": "string"}
    },
    "required": ["url"]
}

# Configuration schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "poll_schedule": {"type": "string"},
        "scan_interval": {"type": "number", "exclusiveMinimum": 0},
        "docker_config": {"type": "string"},
        "approvals": {
            "type": "object",
            "properties": {
                "store": {"type": "string"},
                "expiry_interval": {"type": "number", "exclusiveMinimum": 0}
            }
        },
        "registries": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "username": {"type": "string"},
                    "password": {"type": "string"}
                },
                "required": ["username", "password"]
            }
        },
        "notifications": {
            "type": "object",
            "properties": {
                "retries": {"type": "integer", "minimum": 1},
                "ntfy": _NOTIFIER_SCHEMA,
                "webhook": _NOTIFIER_SCHEMA
            }
        },
        "images": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "image": {"type": "string"},
                    "name": {"type": "string"},
                    "namespace": {"type": "string"},
                    "policy": {"type": "string"},
                    "match_tag": {"type": "boolean"},
                    "match_pre_release": {"type": "boolean"},
                    "schedule": {"type": "string"},
                    "trigger": {"type": "string", "enum": ["default", "poll", "approval"]},
                    "approvals": {"type": "integer", "minimum": 0},
                    "approval_deadline": {"type": "integer", "minimum": 1},
                    "pre_release_tags": {"type": "object", "additionalProperties": {"type": "string"}},
                    "secrets": {"type": "array", "items": {"type": "string"}}
                },
                "required": ["image", "policy"]
            }
        }
    },
    "required": ["images"]
}


def setup_logging(level: str) -> None:
    """Configure the root logger once; every module logs through it."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))

    if not root.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)


def load_config(config_file: str) -> Dict[str, Any]:
    """Load and validate configuration from JSON file.

    Raises:
        FileNotFoundError, json.JSONDecodeError, jsonschema.ValidationError,
        PolicyError: the configuration cannot be used
    """
    try:
        with open(config_file, 'r') as f:
            config = json.load(f)

        # Validate against schema
        jsonschema.validate(config, CONFIG_SCHEMA)

        # Fail early on regex policies that could hang a watch job
        for image_config in config.get('images', []):
            policy = image_config['policy']
            if policy.startswith('regexp:'):
                validate_regex(policy[len('regexp:'):])

        return config

    except FileNotFoundError:
        logger.error(f"Config file {config_file} not found")
        raise
    except json.JSONDecodeError as e:
        logger.error(f"Error parsing config file: {e}")
        raise
    except jsonschema.ValidationError as e:
        logger.error(f"Configuration validation failed: {e.message}")
        raise
    except PolicyError as e:
        logger.error(f"Invalid policy in configuration: {e}")
        raise


class TagWatch:
    """Wires the watcher, providers, approvals and credentials together."""

    def __init__(self, config: Dict[str, Any], state_file: str, dry_run: bool = False,
                 registry_client: Optional[RegistryClient] = None):
        self.config = config
        self.stop_event = threading.Event()

        approvals_cfg = config.get('approvals') or {}
        self.expiry_interval = approvals_cfg.get('expiry_interval', DEFAULT_EXPIRY_INTERVAL)
        self.approval_manager = ApprovalManager(
            JsonApprovalStore(approvals_cfg.get('store', DEFAULT_APPROVALS_FILE)))

        self.credentials_helpers = CredentialsHelpers()
        self.credentials_helpers.register('static', StaticCredentialsHelper(config.get('registries') or {}))
        self.credentials_helpers.register(
            'docker-config', DockerConfigHelper(config.get('docker_config', DEFAULT_DOCKER_CONFIG)))

        self.provider = ConfigProvider(config, state_file, self.approval_manager,
                                       dry_run=dry_run, stop_event=self.stop_event)
        self.providers = Providers([self.provider], self.approval_manager)

        self.watcher = RepositoryWatcher(self.providers, registry_client or RegistryClient(),
                                         self.credentials_helpers)
        self.poll_manager = PollManager(self.providers, self.watcher,
                                        config.get('scan_interval', DEFAULT_SCAN_INTERVAL))

    def run_once(self) -> int:
        """Check every tracked image once. Returns the number of images checked."""
        try:
            self.approval_manager.expire_entries()
            return self.poll_manager.scan()
        finally:
            self.stop()

    def run(self) -> None:
        """Watch until stop() is called."""
        self.approval_manager.start_expiry_service(self.stop_event, self.expiry_interval)
        self.poll_manager.start(self.stop_event)

    def stop(self) -> None:
        if not self.stop_event.is_set():
            logger.info("Stopping...")
        self.stop_event.set()
        self.watcher.scheduler.stop()
        self.providers.stop()


def _run_approvals_command(app: TagWatch, args) -> int:
    manager = app.approval_manager

    if args.approvals_command == 'list':
        for approval in manager.list(archived=args.archived):
            print(f"{approval.identifier}\t{approval.status().value}\t"
                  f"{approval.votes_received}/{approval.votes_required}\t{approval.delta()}\t"
                  f"deadline {approval.deadline.isoformat()}")
        return 0

    try:
        if args.approvals_command == 'approve':
            approval = manager.approve(args.identifier, args.voter)
            print(f"{approval.identifier}: {approval.status().value} "
                  f"({approval.votes_received}/{approval.votes_required})")
        elif args.approvals_command == 'reject':
            approval = manager.reject(args.identifier)
            print(f"{approval.identifier}: {approval.status().value}")
    except ApprovalError as e:
        logger.error(str(e))
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Container image update controller'
    )
    parser.add_argument(
        '-c', '--config',
        default=os.environ.get('CONFIG_FILE', 'config.json'),
        help='Path to configuration JSON file (env: CONFIG_FILE, default: config.json)'
    )
    parser.add_argument(
        '--state',
        default=os.environ.get('STATE_FILE', 'tagwatch_state.json'),
        help='Path to state file (env: STATE_FILE, default: tagwatch_state.json)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        default=os.environ.get('DRY_RUN', '').lower() == 'true',
        help='Detect updates without recording them (env: DRY_RUN)'
    )
    parser.add_argument(
        '--once',
        action='store_true',
        default=os.environ.get('ONCE', '').lower() == 'true',
        help='Check every image once and exit instead of watching (env: ONCE)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO'),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    commands = parser.add_subparsers(dest='command')
    approvals = commands.add_parser('approvals', help='Manage pending update approvals')
    approval_commands = approvals.add_subparsers(dest='approvals_command', required=True)

    list_parser = approval_commands.add_parser('list', help='List approvals')
    list_parser.add_argument('--archived', action='store_true', help='List archived approvals instead')

    approve_parser = approval_commands.add_parser('approve', help='Vote for an update')
    approve_parser.add_argument('identifier', help='Approval identifier, e.g. default/app:1.2.0')
    approve_parser.add_argument(
        '--voter',
        default=os.environ.get('APPROVAL_VOTER', os.environ.get('USER', 'cli')),
        help='Name recorded for the vote (env: APPROVAL_VOTER, default: $USER)'
    )

    reject_parser = approval_commands.add_parser('reject', help='Reject an update')
    reject_parser.add_argument('identifier', help='Approval identifier, e.g. default/app:1.2.0')

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = load_config(args.config)
        app = TagWatch(config, args.state, args.dry_run)
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        sys.exit(1)

    if args.command == 'approvals':
        sys.exit(_run_approvals_command(app, args))

    if args.once:
        checked = app.run_once()
        logger.info(f"Checked {checked} images")
        return

    signal.signal(signal.SIGTERM, lambda signum, frame: app.stop())
    logger.info(f"tagwatch {__version__} watching {len(config['images'])} configured images")
    try:
        app.run()
    except KeyboardInterrupt:
        logger.info("Exiting...")
    finally:
        app.stop()


if __name__ == '__main__':
    main()
