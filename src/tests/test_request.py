import base64
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from isolaunch.common_utils import DecodeFailure, NotFound
from isolaunch.request import (
    MAX_DEPTH,
    TargetKind,
    build_request,
    decode_request,
    decode_request_generic,
    decode_request_ordered,
    encode_request,
)
from isolaunch.requirements import Requirement


class TestBuildRequest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.script = Path(self.tmp.name) / "job.py"
        self.script.write_text("print('hi')\n", encoding="utf-8")

    def tearDown(self):
        self.tmp.cleanup()

    def test_missing_script(self):
        with self.assertRaises(NotFound):
            build_request(TargetKind.SCRIPT, Path(self.tmp.name) / "nope.py")

    def test_script_path_made_absolute(self):
        cwd = os.getcwd()
        os.chdir(self.tmp.name)
        try:
            request = build_request("script", "job.py", vendored_path="vendor")
        finally:
            os.chdir(cwd)
        self.assertTrue(Path(request.target).is_absolute())
        self.assertEqual(Path(request.target), self.script.resolve())
        self.assertTrue(Path(request.vendored_path).is_absolute())

    def test_absent_args_become_empty(self):
        request = build_request(TargetKind.COMMAND, "json.tool")
        self.assertEqual(request.args, [])
        self.assertEqual(request.kwargs, {})
        self.assertIsNone(request.vendored_path)

    def test_command_is_not_checked_on_disk(self):
        request = build_request(TargetKind.COMMAND, "no-such-command", args=[1, "x"])
        self.assertEqual(request.target, "no-such-command")
        self.assertEqual(request.args, ["1", "x"])


class TestTransport(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        script = Path(self.tmp.name) / "job.py"
        script.write_text("", encoding="utf-8")
        self.request = build_request(
            TargetKind.SCRIPT,
            script,
            args=["--flag", "value with spaces", "quote's \"here\""],
            kwargs={"nested": {"a": [1, 2, {"b": None}]}},
            requirements=[
                Requirement("requests", required_version="2.30.0"),
                Requirement("rich", minimum_version="13.0"),
            ],
            install_if_missing=True,
            preload=["json"],
            versions_root=self.tmp.name,
        )

    def tearDown(self):
        self.tmp.cleanup()

    def test_token_is_url_safe(self):
        token = encode_request(self.request)
        self.assertRegex(token, r"^[A-Za-z0-9_\-=]+$")

    def test_both_decoders_agree(self):
        token = encode_request(self.request)
        ordered = decode_request_ordered(token)
        generic = decode_request_generic(token)
        self.assertEqual(ordered, generic)
        self.assertEqual(decode_request(token), self.request)

    def test_falls_back_to_generic_decoder(self):
        token = encode_request(self.request)
        with mock.patch(
            "isolaunch.request.decode_request_ordered", side_effect=TypeError("no ordered maps")
        ) as ordered:
            decoded = decode_request(token)
        ordered.assert_called_once_with(token)
        self.assertEqual(decoded, self.request)

    def test_nameless_requirement_is_a_decode_failure(self):
        payload = self.request.to_dict()
        payload["requirements"] = [{"name": "", "required_version": "1.0"}]
        token = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()
        for decoder in (decode_request_ordered, decode_request_generic, decode_request):
            with self.subTest(decoder=decoder.__name__):
                with self.assertRaises(DecodeFailure) as ctx:
                    decoder(token)
                self.assertEqual(ctx.exception.exit_code, 3)

    def test_garbage_token(self):
        with self.assertRaises(DecodeFailure) as ctx:
            decode_request("!!not-base64!!")
        self.assertEqual(ctx.exception.exit_code, 3)

    def test_wrong_schema(self):
        payload = self.request.to_dict()
        payload["schema"] = 99
        token = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()
        with self.assertRaises(DecodeFailure):
            decode_request_ordered(token)
        with self.assertRaises(DecodeFailure):
            decode_request_generic(token)

    def test_missing_field(self):
        payload = self.request.to_dict()
        del payload["target"]
        token = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()
        with self.assertRaises(DecodeFailure):
            decode_request(token)

    def test_depth_limit(self):
        deep = value = {}
        for _ in range(MAX_DEPTH + 2):
            value["x"] = {}
            value = value["x"]
        request = build_request(TargetKind.COMMAND, "json.tool", kwargs=deep)
        with self.assertRaises(ValueError):
            encode_request(request)


if __name__ == "__main__":
    unittest.main()
