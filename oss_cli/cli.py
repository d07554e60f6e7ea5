from __future__ import annotations
"""Argument parsing, logging setup and command dispatch."""

import argparse
import logging
import sys
from typing import Sequence, TextIO

from botocore.exceptions import BotoCoreError, ClientError

from .commands import AppendFromFileCommand, Command, CommandError, ConfigCommand, ListCloudBoxesCommand
from .controller import ConnectionConfigError, NotConnectedError, OSSController
from .profiles import ProfileStorage
from .services import OSSService
from .settings import LOG_LEVELS, SIGN_VERSIONS, SettingsStorage
from .utils import load_package_info

LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
HANDLED_ERRORS = (
    CommandError,
    ConnectionConfigError,
    NotConnectedError,
    ClientError,
    BotoCoreError,
    ValueError,
    OSError,
)


def setup_logging(level: str, stream: TextIO | None = None) -> None:
    """Send log records to stderr; without a level only warnings are shown."""

    log_level = getattr(logging, level.upper(), logging.WARNING) if level else logging.WARNING
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_pyoss_handler", False):
            root.removeHandler(handler)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._pyoss_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(log_level)
    if log_level > logging.DEBUG:
        logging.getLogger("botocore").setLevel(logging.WARNING)
        logging.getLogger("urllib3").setLevel(logging.WARNING)


def add_connection_flags(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("connection options")
    group.add_argument("--profile", help="Saved connection profile to use")
    group.add_argument("-e", "--endpoint", help="Service endpoint, e.g. oss-cn-hangzhou.aliyuncs.com")
    group.add_argument("-i", "--access-key-id", help="Access key id")
    group.add_argument("-k", "--access-key-secret", help="Access key secret")
    group.add_argument("-t", "--sts-token", help="STS security token")
    group.add_argument("--region", help="Region (or cloud box id) used for v4 signatures")
    group.add_argument("--sign-version", choices=SIGN_VERSIONS, help="Request signature version")
    group.add_argument("--proxy-host", help="Proxy url, e.g. http://proxy:3128")
    group.add_argument("--connect-timeout", type=int, help="Connect timeout in seconds")
    group.add_argument("--read-timeout", type=int, help="Read timeout in seconds")
    group.add_argument("--skip-verify-cert", action="store_true", help="Do not verify TLS certificates")
    group.add_argument("--ua", dest="user_agent", help="Extra user agent string")
    group.add_argument("--retry-times", type=int, help="Attempts per listing request")


def add_global_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config-file", help="Settings file (default ~/.pyoss_settings.json)")
    parser.add_argument("--loglevel", choices=[level for level in LOG_LEVELS if level], help="Log level")


def build_commands(
    controller: OSSController,
    settings_storage: SettingsStorage,
    stdout: TextIO | None = None,
) -> list[Command]:
    return [
        ListCloudBoxesCommand(controller, stdout=stdout),
        AppendFromFileCommand(controller, stdout=stdout),
        ConfigCommand(controller, settings_storage, stdout=stdout),
    ]


def build_parser(commands: Sequence[Command]) -> argparse.ArgumentParser:
    info = load_package_info()
    parser = argparse.ArgumentParser(prog="pyoss", description=info.summary)
    parser.add_argument("--version", action="version", version=f"%(prog)s {info.version or 'unknown'}")
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)
    for command in commands:
        sub = subparsers.add_parser(
            command.name,
            aliases=list(command.aliases),
            help=command.help_text,
            description=command.description,
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        command.add_arguments(sub)
        add_global_flags(sub)
        add_connection_flags(sub)
        sub.set_defaults(handler=command)
    return parser


def _peek_config_file(argv: Sequence[str]) -> str | None:
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config-file")
    known, _ = pre.parse_known_args(list(argv))
    return known.config_file


def _connect(controller: OSSController, args: argparse.Namespace) -> None:
    controller.connect(
        profile_name=args.profile,
        endpoint_url=args.endpoint,
        access_key=args.access_key_id,
        secret_key=args.access_key_secret,
        sts_token=args.sts_token,
        region=args.region,
        sign_version=args.sign_version,
        connect_timeout=args.connect_timeout,
        read_timeout=args.read_timeout,
        proxy_host=args.proxy_host,
        skip_verify_cert=args.skip_verify_cert,
        user_agent=args.user_agent,
    )


def main(
    argv: Sequence[str] | None = None,
    *,
    service: OSSService | None = None,
    profile_storage: ProfileStorage | None = None,
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    stderr = stderr or sys.stderr

    settings_storage = SettingsStorage(_peek_config_file(argv))
    settings = settings_storage.load()
    controller = OSSController(service=service, storage=profile_storage, settings=settings)
    commands = build_commands(controller, settings_storage, stdout=stdout)
    args = build_parser(commands).parse_args(argv)

    setup_logging(args.loglevel or settings.loglevel, stderr)
    command: Command = args.handler
    LOGGER.debug("Running command '%s'", command.name)
    try:
        command.init(args)
        if command.requires_connection:
            _connect(controller, args)
        return command.run()
    except HANDLED_ERRORS as exc:
        LOGGER.debug("Command '%s' failed", command.name, exc_info=True)
        print(f"Error: {exc}", file=stderr)
        return 1
