import argparse
import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from botocore.exceptions import ClientError

from oss_cli.commands import (
    AppendFromFileCommand,
    CommandError,
    ConfigCommand,
    ListCloudBoxesCommand,
)
from oss_cli.models import CloudBox, CloudBoxPage
from oss_cli.profiles import ConnectionProfile
from oss_cli.settings import AppSettings, SettingsStorage


def make_boxes(*ids):
    return [CloudBox(id=box_id, name=f"name-{box_id}") for box_id in ids]


class FakeController:
    def __init__(self, settings=None):
        self.settings = settings or AppSettings()
        self.pages = []
        self.list_calls = []
        self.exists = False
        self.length = 0
        self.new_position = None
        self.append_error = None
        self.calls = []
        self.profiles = []

    def list_cloud_boxes(self, *, prefix="", marker="", retry_times=1):
        self.list_calls.append({"prefix": prefix, "marker": marker, "retry_times": retry_times})
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return page

    def object_exists(self, *, bucket_name, key):
        self.calls.append(("exists", bucket_name, key))
        return self.exists

    def get_object_length(self, *, bucket_name, key):
        self.calls.append(("length", bucket_name, key))
        return self.length

    def append_object(self, **kwargs):
        self.calls.append(("append", kwargs))
        if self.append_error:
            raise self.append_error
        callback = kwargs.get("progress_callback")
        with open(kwargs["source_path"], "rb") as handle:
            size = len(handle.read())
        if callback:
            callback(size, size, False)
            callback(size, size, True)
        if self.new_position is not None:
            return self.new_position
        return kwargs["position"] + size

    def list_profiles(self):
        return list(self.profiles)

    def save_profile(self, profile):
        self.profiles = [p for p in self.profiles if p.name != profile.name] + [profile]

    def delete_profile(self, name):
        before = len(self.profiles)
        self.profiles = [p for p in self.profiles if p.name != name]
        if len(self.profiles) == before:
            raise ValueError(f"Profile '{name}' does not exist")


def lcb_args(url=None, limited_num=-1, marker="", retry_times=None):
    return argparse.Namespace(url=url, limited_num=limited_num, marker=marker, retry_times=retry_times)


class ListCloudBoxesCommandTests(unittest.TestCase):
    def setUp(self):
        self.controller = FakeController(AppSettings(retry_times=3))
        self.stdout = io.StringIO()
        self.command = ListCloudBoxesCommand(self.controller, stdout=self.stdout)

    def rows(self):
        lines = self.stdout.getvalue().splitlines()
        return [line for line in lines if not line.startswith("ID")]

    def test_init_builds_typed_options(self):
        self.command.init(lcb_args(url="oss://cb-prefix", limited_num=5, marker="cb%2F1"))

        self.assertEqual("cb-prefix", self.command.options.prefix)
        self.assertEqual("cb/1", self.command.options.marker)
        self.assertEqual(5, self.command.options.limited_num)
        self.assertEqual(3, self.command.options.retry_times)

    def test_retry_flag_overrides_settings(self):
        self.command.init(lcb_args(retry_times=7))

        self.assertEqual(7, self.command.options.retry_times)

    def test_zero_retry_flag_means_single_attempt(self):
        self.command.init(lcb_args(retry_times=0))

        self.assertEqual(1, self.command.options.retry_times)

    def test_malformed_marker_rejected_before_any_request(self):
        with self.assertRaises(CommandError):
            self.command.init(lcb_args(marker="bad%zzmarker"))

        self.assertEqual([], self.controller.list_calls)

    def test_lists_all_pages_when_unlimited(self):
        self.controller.pages = [
            CloudBoxPage(prefix="cb", next_marker="m1", is_truncated=True, cloud_boxes=make_boxes("a", "b")),
            CloudBoxPage(prefix="cb", next_marker="m2", is_truncated=True, cloud_boxes=make_boxes("c")),
            CloudBoxPage(prefix="cb", is_truncated=False, cloud_boxes=make_boxes("d")),
        ]
        self.command.init(lcb_args(url="oss://cb"))

        self.assertEqual(0, self.command.run())

        lines = self.stdout.getvalue().splitlines()
        self.assertTrue(lines[0].startswith("ID"))
        self.assertEqual(1, sum(1 for line in lines if line.startswith("ID")))
        self.assertEqual(["a", "b", "c", "d"], [row.split()[0] for row in self.rows()])
        self.assertEqual(
            [
                {"prefix": "cb", "marker": "", "retry_times": 3},
                {"prefix": "cb", "marker": "m1", "retry_times": 3},
                {"prefix": "cb", "marker": "m2", "retry_times": 3},
            ],
            self.controller.list_calls,
        )

    def test_limit_stops_across_pages(self):
        self.controller.pages = [
            CloudBoxPage(next_marker="m1", is_truncated=True, cloud_boxes=make_boxes("a", "b")),
            CloudBoxPage(next_marker="m2", is_truncated=True, cloud_boxes=make_boxes("c", "d")),
            CloudBoxPage(is_truncated=False, cloud_boxes=make_boxes("e")),
        ]
        self.command.init(lcb_args(limited_num=3))

        self.command.run()

        self.assertEqual(["a", "b", "c"], [row.split()[0] for row in self.rows()])
        self.assertEqual(2, len(self.controller.list_calls))

    def test_limit_larger_than_total(self):
        self.controller.pages = [CloudBoxPage(is_truncated=False, cloud_boxes=make_boxes("a", "b"))]
        self.command.init(lcb_args(limited_num=10))

        self.command.run()

        self.assertEqual(2, len(self.rows()))

    def test_zero_limit_issues_no_request(self):
        self.command.init(lcb_args(limited_num=0))

        self.command.run()

        self.assertEqual("", self.stdout.getvalue())
        self.assertEqual([], self.controller.list_calls)

    def test_single_page_when_not_truncated(self):
        self.controller.pages = [
            CloudBoxPage(is_truncated=False, cloud_boxes=make_boxes("a")),
            CloudBoxPage(is_truncated=False, cloud_boxes=make_boxes("b")),
        ]
        self.command.init(lcb_args())

        self.command.run()

        self.assertEqual(1, len(self.controller.list_calls))

    def test_header_waits_for_first_non_empty_page(self):
        self.controller.pages = [
            CloudBoxPage(next_marker="m1", is_truncated=True, cloud_boxes=[]),
            CloudBoxPage(is_truncated=False, cloud_boxes=make_boxes("a")),
        ]
        self.command.init(lcb_args())

        self.command.run()

        lines = self.stdout.getvalue().splitlines()
        self.assertEqual(2, len(lines))
        self.assertTrue(lines[0].startswith("ID"))

    def test_empty_listing_prints_nothing(self):
        self.controller.pages = [CloudBoxPage(is_truncated=False)]
        self.command.init(lcb_args())

        self.assertEqual(0, self.command.run())
        self.assertEqual("", self.stdout.getvalue())

    def test_service_error_propagates(self):
        error = ClientError({"Error": {"Code": "AccessDenied", "Message": "Denied"}}, "ListCloudBoxes")
        self.controller.pages = [error]
        self.command.init(lcb_args())

        with self.assertRaises(ClientError):
            self.command.run()


def append_args(local_file_name, url="oss://bucket/a.log", meta="", encoding_type="", maxupspeed=0):
    return argparse.Namespace(
        local_file_name=local_file_name,
        url=url,
        meta=meta,
        encoding_type=encoding_type,
        maxupspeed=maxupspeed,
    )


class FakeClock:
    def __init__(self):
        self.now = 10.0

    def __call__(self):
        self.now += 0.5
        return self.now


class AppendFromFileCommandTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "local.log"
        self.path.write_bytes(b"x" * 2048)
        self.controller = FakeController()
        self.stdout = io.StringIO()
        self.command = AppendFromFileCommand(self.controller, stdout=self.stdout, clock=FakeClock())

    def tearDown(self):
        self.tmp.cleanup()

    def test_init_validates_and_builds_options(self):
        self.command.init(append_args(str(self.path), meta="X-Oss-Meta-Author:chanju"))

        options = self.command.options
        self.assertEqual("bucket", options.bucket_name)
        self.assertEqual("a.log", options.object_name)
        self.assertEqual(2048, options.file_size)
        self.assertEqual({"X-Oss-Meta-Author": "chanju"}, options.headers)

    def test_init_decodes_url_encoded_object_name(self):
        self.command.init(append_args(str(self.path), url="oss://bucket/dir%2Fa%20b.log", encoding_type="url"))

        self.assertEqual("dir/a b.log", self.command.options.object_name)

    def test_empty_object_key_rejected(self):
        with self.assertRaises(CommandError) as ctx:
            self.command.init(append_args(str(self.path), url="oss://bucket/"))

        self.assertIn("object key is empty", str(ctx.exception))

    def test_missing_local_file_rejected(self):
        with self.assertRaises(FileNotFoundError):
            self.command.init(append_args(str(Path(self.tmp.name) / "missing.log")))

    def test_directory_rejected(self):
        with self.assertRaises(CommandError) as ctx:
            self.command.init(append_args(self.tmp.name))

        self.assertIn("is dir", str(ctx.exception))

    def test_oversized_file_rejected_without_opening(self):
        fake_stat = os.stat_result((0o100644, 0, 0, 1, 0, 0, 5 * 1024 ** 3 + 1, 0, 0, 0))
        with mock.patch("oss_cli.commands.os.stat", return_value=fake_stat), mock.patch(
            "builtins.open"
        ) as fake_open:
            with self.assertRaises(CommandError) as ctx:
                self.command.init(append_args(str(self.path)))

        fake_open.assert_not_called()
        self.assertIn("bigger than", str(ctx.exception))

    def test_invalid_meta_rejected(self):
        with self.assertRaises(CommandError):
            self.command.init(append_args(str(self.path), meta="X-Unknown:1"))

    def test_appends_to_new_object_from_zero(self):
        self.command.init(append_args(str(self.path), meta="X-Oss-Meta-Author:chanju"))

        self.assertEqual(0, self.command.run())

        self.assertEqual(("exists", "bucket", "a.log"), self.controller.calls[0])
        self.assertEqual("append", self.controller.calls[1][0])
        append_call = self.controller.calls[1][1]
        self.assertEqual(0, append_call["position"])
        self.assertEqual({"X-Oss-Meta-Author": "chanju"}, append_call["headers"])
        output = self.stdout.getvalue()
        self.assertIn("total append 2048(100.00%) byte", output)
        self.assertIn("local file size is 2048,the object new size is 2048,average speed is", output)

    def test_appends_to_existing_object_at_its_length(self):
        self.controller.exists = True
        self.controller.length = 100
        self.command.init(append_args(str(self.path)))

        self.command.run()

        self.assertEqual(("length", "bucket", "a.log"), self.controller.calls[1])
        append_call = self.controller.calls[2][1]
        self.assertEqual(100, append_call["position"])
        self.assertIsNone(append_call["headers"])
        self.assertIn("the object new size is 2148", self.stdout.getvalue())

    def test_meta_on_existing_object_rejected_before_append(self):
        self.controller.exists = True
        self.command.init(append_args(str(self.path), meta="X-Oss-Meta-Author:chanju"))

        with self.assertRaises(CommandError) as ctx:
            self.command.run()

        self.assertIn("setting meta on existing append object is not supported", str(ctx.exception))
        self.assertEqual([("exists", "bucket", "a.log")], self.controller.calls)

    def test_append_error_propagates(self):
        self.controller.append_error = ClientError(
            {"Error": {"Code": "PositionNotEqualToLength", "Message": "position mismatch"}},
            "PutObject",
        )
        self.command.init(append_args(str(self.path)))

        with self.assertRaises(ClientError):
            self.command.run()

        self.assertEqual(1, sum(1 for call in self.controller.calls if call[0] == "append"))

    def test_average_speed_uses_elapsed_time(self):
        self.command.init(append_args(str(self.path)))

        self.command.run()

        # every clock read advances 0.5s; the listener reads it twice between start and end
        self.assertIn("average speed is 1.37(KB/s)", self.stdout.getvalue())


class ConfigCommandTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.settings_path = Path(self.tmp.name) / "settings.json"
        self.controller = FakeController()
        self.stdout = io.StringIO()
        self.command = ConfigCommand(self.controller, SettingsStorage(self.settings_path), stdout=self.stdout)

    def tearDown(self):
        self.tmp.cleanup()

    def save_args(self, name="prod", default=False, **overrides):
        values = {
            "config_action": "save",
            "profile_name": name,
            "default": default,
            "endpoint": "https://oss",
            "access_key_id": "id",
            "access_key_secret": "secret",
            "region": None,
        }
        values.update(overrides)
        return argparse.Namespace(**values)

    def test_save_requires_credentials(self):
        with self.assertRaises(CommandError) as ctx:
            self.command.init(self.save_args(access_key_secret=None))

        self.assertIn("--access-key-secret", str(ctx.exception))

    def test_save_and_mark_default(self):
        self.command.init(self.save_args(default=True, region="cn-hangzhou"))

        self.assertEqual(0, self.command.run())

        self.assertEqual(
            [ConnectionProfile("prod", "https://oss", "id", "secret", "cn-hangzhou")],
            self.controller.profiles,
        )
        saved = json.loads(self.settings_path.read_text(encoding="utf-8"))
        self.assertEqual("prod", saved["default_profile"])

    def test_list_marks_default(self):
        self.controller.settings = AppSettings(default_profile="prod")
        self.controller.profiles = [
            ConnectionProfile("prod", "https://oss", "id", "secret"),
            ConnectionProfile("dev", "https://dev", "dev-id", "secret", "cb-1"),
        ]
        self.command.init(argparse.Namespace(config_action="list"))

        self.command.run()

        lines = self.stdout.getvalue().splitlines()
        self.assertEqual("* prod\thttps://oss\tid", lines[0])
        self.assertEqual("  dev\thttps://dev\tdev-id region=cb-1", lines[1])

    def test_delete_unknown_profile_fails(self):
        self.command.init(argparse.Namespace(config_action="delete", profile_name="missing"))

        with self.assertRaises(CommandError):
            self.command.run()

    def test_delete_clears_default(self):
        self.controller.settings = AppSettings(default_profile="prod")
        self.controller.profiles = [ConnectionProfile("prod", "https://oss", "id", "secret")]
        self.command.init(argparse.Namespace(config_action="delete", profile_name="prod"))

        self.command.run()

        self.assertEqual([], self.controller.profiles)
        saved = json.loads(self.settings_path.read_text(encoding="utf-8"))
        self.assertEqual("", saved["default_profile"])


if __name__ == "__main__":
    unittest.main()
