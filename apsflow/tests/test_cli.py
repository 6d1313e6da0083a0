"""
CLI tests

Only commands that run without network access are exercised end to end.
"""

import contextlib
import io
import json
import os
import tempfile
import unittest
from unittest import mock

from apsflow import cli

GRAPH = {"Uuid": "abc", "Name": "G", "Nodes": [{"Id": "1"}], "Connectors": []}


class TestConvertCommand(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def write(self, name, text):
        path = os.path.join(self.tmp.name, name)
        with open(path, "w") as f:
            f.write(text)
        return path

    def run_cli(self, *argv):
        out, err = io.StringIO(), io.StringIO()
        with mock.patch.object(cli, "load_dotenv"), \
                contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = cli.main(list(argv))
        return code, out.getvalue(), err.getvalue()

    def test_convert_writes_run_request(self):
        src = self.write("run.dyn", json.dumps(GRAPH))
        dst = os.path.join(self.tmp.name, "run.json")

        code, out, _ = self.run_cli("convert", src, "-o", dst)

        self.assertEqual(code, 0)
        with open(dst) as f:
            run_request = json.load(f)
        self.assertEqual(run_request["target"]["type"], "JsonGraphTarget")
        self.assertEqual(json.loads(out)["dynamo_properties"]["nodes_count"], 1)

    def test_convert_prints_content_without_output(self):
        src = self.write("run.dyn", json.dumps(GRAPH))
        code, out, _ = self.run_cli("convert", src)
        self.assertEqual(code, 0)
        self.assertIn("JsonGraphTarget", json.loads(out)["jsonContent"])

    def test_wrong_filename_is_structured_error(self):
        src = self.write("graph.dyn", json.dumps(GRAPH))

        code, out, err = self.run_cli("convert", src)

        self.assertEqual(code, 1)
        self.assertEqual(out, "")
        body = json.loads(err)
        self.assertFalse(body["success"])
        self.assertEqual(body["operation"], "convert")

    def test_upload_rejects_misnamed_graph(self):
        src = self.write("run.dyn", json.dumps(GRAPH))

        with mock.patch.object(cli, "make_client") as make_client:
            code, out, err = self.run_cli("upload", src, "--as", "graph.dyn")

        self.assertEqual(code, 1)
        self.assertEqual(out, "")
        self.assertEqual(json.loads(err)["operation"], "upload")
        make_client.assert_not_called()

    def test_invalid_graph(self):
        src = self.write("run.dyn", "not json")
        code, _, err = self.run_cli("convert", src)
        self.assertEqual(code, 1)
        self.assertEqual(json.loads(err)["error"], "Invalid Dynamo file format")

    def test_missing_credentials(self):
        with mock.patch.dict(os.environ, {"APS_CLIENT_ID": "", "APS_CLIENT_SECRET": ""}):
            code, _, err = self.run_cli("token")
        self.assertEqual(code, 1)
        self.assertIn("APS_CLIENT_ID", json.loads(err)["error"])

    def test_no_command_prints_help(self):
        code, out, _ = self.run_cli()
        self.assertEqual(code, 0)
        self.assertIn("usage", out.lower())


class TestParser(unittest.TestCase):

    def test_run_defaults(self):
        args = cli.build_parser().parse_args(["run"])
        self.assertEqual(args.rvt, "run.rvt")
        self.assertFalse(args.no_wait)

    def test_download_choices(self):
        args = cli.build_parser().parse_args(["download", "result-rvt", "-m", "15"])
        self.assertEqual(args.which, "result-rvt")
        self.assertEqual(args.minutes, 15)


if __name__ == "__main__":
    unittest.main(verbosity=2)
