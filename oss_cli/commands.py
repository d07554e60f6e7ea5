from __future__ import annotations
"""Command handlers: each one validates its arguments, then drives the controller."""

from abc import ABC, abstractmethod
import argparse
from dataclasses import dataclass, field, replace
import logging
import os
import stat
import sys
import time
from typing import Callable, TextIO

from .controller import OSSController
from .profiles import ConnectionProfile
from .settings import SettingsStorage
from .transfer import AppendProgressListener
from .utils import (
    MAX_APPEND_OBJECT_SIZE,
    check_encoding_type,
    decode_marker,
    format_cloud_box,
    format_cloud_box_header,
    headers_to_put_params,
    kb_per_second,
    parse_cloud_url,
    parse_meta_headers,
)

LOGGER = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Raised when a command's arguments or preconditions are invalid."""


class Command(ABC):
    """Capability set shared by every sub-command.

    ``init`` turns parsed arguments into typed options and performs all local
    validation; ``run`` talks to the service and returns the exit status.
    """

    name: str = ""
    aliases: tuple[str, ...] = ()
    help_text: str = ""
    description: str = ""
    requires_connection: bool = True

    def __init__(self, controller: OSSController, *, stdout: TextIO | None = None):
        self._controller = controller
        self._stdout = stdout or sys.stdout

    def add_arguments(self, parser: argparse.ArgumentParser) -> None:
        """Register the command's own positional arguments and flags."""

    @abstractmethod
    def init(self, args: argparse.Namespace) -> None:
        ...

    @abstractmethod
    def run(self) -> int:
        ...

    def _print(self, text: str = "", end: str = "\n") -> None:
        print(text, end=end, file=self._stdout)


@dataclass(frozen=True)
class ListCloudBoxesOptions:
    prefix: str = ""
    marker: str = ""
    limited_num: int = -1
    retry_times: int = 1


class ListCloudBoxesCommand(Command):
    name = "lcb"
    aliases = ("list-cloud-boxes",)
    help_text = "List cloud box information"
    description = (
        "List the cloud boxes visible to the account. An optional oss://prefix "
        "argument restricts the listing to cloud boxes whose name starts with prefix.\n\n"
        "example:\n  pyoss lcb --sign-version v4 --region cloudbox-id"
    )

    def __init__(self, controller: OSSController, *, stdout: TextIO | None = None):
        super().__init__(controller, stdout=stdout)
        self.options = ListCloudBoxesOptions()

    def add_arguments(self, parser: argparse.ArgumentParser) -> None:
        parser.add_argument("url", nargs="?", help="oss://prefix used to filter cloud box names")
        parser.add_argument(
            "--limited-num",
            type=int,
            default=-1,
            help="Maximum number of cloud boxes to list; negative lists everything",
        )
        parser.add_argument("--marker", default="", help="URL-encoded marker to start listing after")

    def init(self, args: argparse.Namespace) -> None:
        prefix = ""
        if args.url:
            prefix = parse_cloud_url(args.url).bucket
        try:
            marker = decode_marker(args.marker)
        except ValueError as exc:
            raise CommandError(str(exc)) from exc
        retry_times = args.retry_times
        if retry_times is None:
            retry_times = self._controller.settings.retry_times
        self.options = ListCloudBoxesOptions(
            prefix=prefix,
            marker=marker,
            limited_num=args.limited_num,
            retry_times=max(retry_times, 1),
        )

    def run(self) -> int:
        options = self.options
        prefix = options.prefix
        marker = options.marker
        limit = options.limited_num
        count = 0
        while limit < 0 or count < limit:
            page = self._controller.list_cloud_boxes(
                prefix=prefix,
                marker=marker,
                retry_times=options.retry_times,
            )
            LOGGER.debug(
                "Fetched %d cloud box(es), truncated=%s next_marker=%r",
                len(page.cloud_boxes),
                page.is_truncated,
                page.next_marker,
            )
            prefix = page.prefix
            marker = page.next_marker
            if count == 0 and page.cloud_boxes:
                self._print(format_cloud_box_header())
            for box in page.cloud_boxes:
                if 0 <= limit <= count:
                    break
                self._print(format_cloud_box(box))
                count += 1
            if not page.is_truncated:
                break
        return 0


@dataclass(frozen=True)
class AppendFileOptions:
    bucket_name: str
    object_name: str
    file_name: str
    file_size: int
    headers: dict[str, str] = field(default_factory=dict)
    max_up_speed: int = 0


class AppendFromFileCommand(Command):
    name = "appendfromfile"
    aliases = ("append-from-file",)
    help_text = "Upload the contents of a local file to an object in append mode"
    description = (
        "Append the content of local_file_name to oss://bucket/object.\n\n"
        "If the object does not exist, --meta sets its metadata, for example\n"
        '  --meta "X-Oss-Meta-Author:chanju#Content-Type:text/plain"\n'
        "If the object already exists, --meta is rejected: metadata cannot be\n"
        "set on an existing append object."
    )

    def __init__(
        self,
        controller: OSSController,
        *,
        stdout: TextIO | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(controller, stdout=stdout)
        self._clock = clock
        self.options: AppendFileOptions | None = None

    def add_arguments(self, parser: argparse.ArgumentParser) -> None:
        parser.add_argument("local_file_name", help="Local file whose content is appended")
        parser.add_argument("url", help="Target object, oss://bucket/object")
        parser.add_argument("--meta", default="", help="Header:value pairs separated by '#'")
        parser.add_argument(
            "--encoding-type",
            default="",
            help="Set to 'url' when the object name in the url is URL-encoded",
        )
        parser.add_argument(
            "--maxupspeed",
            type=int,
            default=0,
            help="Maximum upload speed in KB/s, 0 means unlimited",
        )

    def init(self, args: argparse.Namespace) -> None:
        try:
            encoding_type = check_encoding_type(args.encoding_type)
            cloud_url = parse_cloud_url(args.url, encoding_type)
            headers = parse_meta_headers(args.meta)
            headers_to_put_params(headers)
        except ValueError as exc:
            raise CommandError(str(exc)) from exc
        if not cloud_url.bucket:
            raise CommandError("bucket name is empty")
        if not cloud_url.key:
            raise CommandError("object key is empty")
        if args.maxupspeed < 0:
            raise CommandError("--maxupspeed must not be negative")

        file_name = args.local_file_name
        file_stat = os.stat(file_name)
        if stat.S_ISDIR(file_stat.st_mode):
            raise CommandError(f"{file_name} is dir")
        if file_stat.st_size > MAX_APPEND_OBJECT_SIZE:
            raise CommandError(
                f"localfile:{file_name} is bigger than {MAX_APPEND_OBJECT_SIZE}, it is not support by append"
            )

        self.options = AppendFileOptions(
            bucket_name=cloud_url.bucket,
            object_name=cloud_url.key,
            file_name=file_name,
            file_size=file_stat.st_size,
            headers=headers,
            max_up_speed=args.maxupspeed,
        )

    def run(self) -> int:
        options = self.options
        if options is None:
            raise CommandError("appendfromfile was not initialised")

        exists = self._controller.object_exists(bucket_name=options.bucket_name, key=options.object_name)
        if exists and options.headers:
            raise CommandError("setting meta on existing append object is not supported")

        position = 0
        if exists:
            position = self._controller.get_object_length(
                bucket_name=options.bucket_name,
                key=options.object_name,
            )
        LOGGER.debug("Appending to oss://%s/%s from position %d", options.bucket_name, options.object_name, position)

        listener = AppendProgressListener(stream=self._stdout, clock=self._clock)
        started = self._clock()
        new_position = self._controller.append_object(
            bucket_name=options.bucket_name,
            key=options.object_name,
            source_path=options.file_name,
            position=position,
            headers=options.headers or None,
            progress_callback=listener,
            max_speed_kb=options.max_up_speed,
        )
        elapsed_ms = (self._clock() - started) * 1000
        speed = kb_per_second(options.file_size, elapsed_ms)
        self._print(
            f"\nlocal file size is {options.file_size},the object new size is {new_position},"
            f"average speed is {speed:.2f}(KB/s)\n"
        )
        return 0


CONFIG_ACTIONS = ("list", "save", "delete")


class ConfigCommand(Command):
    name = "config"
    aliases = ()
    help_text = "Manage saved connection profiles"
    description = (
        "Save, list and delete named connection profiles. Access key secrets are "
        "kept in the system keychain."
    )
    requires_connection = False

    def __init__(
        self,
        controller: OSSController,
        settings_storage: SettingsStorage,
        *,
        stdout: TextIO | None = None,
    ):
        super().__init__(controller, stdout=stdout)
        self._settings_storage = settings_storage
        self._args: argparse.Namespace | None = None

    def add_arguments(self, parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "config_action",
            choices=CONFIG_ACTIONS,
            metavar="ACTION",
            help="One of: list, save, delete",
        )
        parser.add_argument("profile_name", nargs="?", default="", help="Profile name for save and delete")
        parser.add_argument("--default", action="store_true", help="Use this profile when --profile is omitted")

    def init(self, args: argparse.Namespace) -> None:
        if args.config_action != "list" and not (args.profile_name or "").strip():
            raise CommandError(f"config {args.config_action} requires a profile name")
        if args.config_action == "save":
            missing = [
                flag
                for flag, value in (
                    ("--endpoint", args.endpoint),
                    ("--access-key-id", args.access_key_id),
                    ("--access-key-secret", args.access_key_secret),
                )
                if not value
            ]
            if missing:
                raise CommandError(f"config save requires {', '.join(missing)}")
        self._args = args

    def run(self) -> int:
        args = self._args
        if args is None:
            raise CommandError("config was not initialised")
        if args.config_action == "list":
            return self._list()
        if args.config_action == "save":
            return self._save(args)
        return self._delete(args.profile_name)

    def _list(self) -> int:
        default_name = self._controller.settings.default_profile
        profiles = self._controller.list_profiles()
        if not profiles:
            self._print("no saved profiles")
            return 0
        for profile in profiles:
            marker = "*" if profile.name == default_name else " "
            region = f" region={profile.region}" if profile.region else ""
            self._print(f"{marker} {profile.name}\t{profile.endpoint_url}\t{profile.access_key}{region}")
        return 0

    def _save(self, args: argparse.Namespace) -> int:
        profile = ConnectionProfile(
            name=args.profile_name.strip(),
            endpoint_url=args.endpoint,
            access_key=args.access_key_id,
            secret_key=args.access_key_secret,
            region=args.region or "",
        )
        self._controller.save_profile(profile)
        if args.default:
            self._update_default(profile.name)
        self._print(f"saved profile '{profile.name}'")
        return 0

    def _delete(self, name: str) -> int:
        try:
            self._controller.delete_profile(name)
        except ValueError as exc:
            raise CommandError(str(exc)) from exc
        if self._controller.settings.default_profile == name:
            self._update_default("")
        self._print(f"deleted profile '{name}'")
        return 0

    def _update_default(self, name: str) -> None:
        settings = replace(self._controller.settings, default_profile=name)
        self._settings_storage.save(settings)
