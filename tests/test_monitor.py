"""
Test module for the command line entry point.
"""

import json
import os
import sys
import tempfile
import unittest
from unittest.mock import MagicMock, patch

import yaml

# Add parent directory to path to import monitor modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import monitor
from apidrift.database import create_db_engine, get_session_factory, transaction
from apidrift.exceptions import BadRequestError
from apidrift.models import ApiEndpoint, BlockFields, OpenApiSpec

from helpers import HOST, simple_operation, spec_text, trace_payload


class TestMonitorCli(unittest.TestCase):
    """Test cases for monitor.main."""

    def setUp(self):
        self.directory = tempfile.TemporaryDirectory()
        self.addCleanup(self.directory.cleanup)
        self.db_url = f"sqlite:///{os.path.join(self.directory.name, 'apidrift.db')}"
        self.config_path = self.path("config.yaml")
        with open(self.config_path, "w") as f:
            yaml.safe_dump({
                "database": {"url": self.db_url},
                "logging": {"level": "ERROR", "output": None}
            }, f)
        env = patch.dict(os.environ, {}, clear=True)
        env.start()
        self.addCleanup(env.stop)
        dotenv = patch("apidrift.config.load_dotenv")
        dotenv.start()
        self.addCleanup(dotenv.stop)

    def path(self, name):
        return os.path.join(self.directory.name, name)

    def run_cli(self, *argv):
        return monitor.main(list(argv[:1]) + ["-c", self.config_path] + list(argv[1:]))

    def session_factory(self):
        return get_session_factory(create_db_engine(self.db_url))

    def write_spec(self, name, paths):
        with open(self.path(name), "w") as f:
            f.write(spec_text(paths))
        return self.path(name)

    def test_upload_and_delete_spec(self):
        spec_file = self.write_spec("users.json", {"/users/{id}": {"get": simple_operation()}})

        self.assertEqual(self.run_cli("upload-spec", spec_file), 0)
        self.assertEqual(self.run_cli("list-specs"), 0)
        with transaction(self.session_factory()) as session:
            self.assertEqual(session.query(OpenApiSpec).one().name, "users.json")
            self.assertEqual(session.query(ApiEndpoint).one().path, "/users/{id}")

        self.assertEqual(self.run_cli("delete-spec", "users.json"), 0)
        self.assertEqual(self.run_cli("delete-spec", "users.json"), 1)

    def test_conflicting_upload_fails(self):
        self.run_cli("upload-spec", self.write_spec("a.json", {"/users/{id}": {"get": simple_operation()}}))
        second = self.write_spec("b.json", {"/users/{id}": {"get": simple_operation()}})
        self.assertEqual(self.run_cli("upload-spec", second), 1)

    def test_missing_spec_file(self):
        self.assertEqual(self.run_cli("upload-spec", self.path("missing.json")), 1)
        self.assertEqual(self.run_cli("upload-spec"), 1)

    def test_update_paths_and_suggest(self):
        self.assertEqual(self.run_cli("init-db"), 0)
        with transaction(self.session_factory()) as session:
            endpoint = ApiEndpoint.from_path("/users/1", "GET", HOST)
            session.add(endpoint)

        self.assertEqual(self.run_cli("suggest-paths", endpoint.uuid), 0)
        self.assertEqual(self.run_cli("update-paths", endpoint.uuid, "/users/{id}"), 0)
        with transaction(self.session_factory()) as session:
            self.assertEqual([e.path for e in session.query(ApiEndpoint)], ["/users/{id}"])
        self.assertEqual(self.run_cli("update-paths", endpoint.uuid, "/users/{id}"), 1)

    def test_block_fields(self):
        self.assertEqual(self.run_cli("block-fields", HOST, "post", "/login", "req.body.password"), 0)
        with transaction(self.session_factory()) as session:
            entry = session.query(BlockFields).one()
            self.assertEqual((entry.method, entry.disabled_paths), ("POST", ["req.body.password"]))

    def test_log_trace_and_process_queue(self):
        trace_file = self.path("traces.json")
        with open(trace_file, "w") as f:
            json.dump([trace_payload("/health"), trace_payload("/health")], f)

        queued = []
        queue = MagicMock()
        queue.length.return_value = 0
        queue.push.side_effect = queued.append
        with patch.object(monitor.MonitorApp, "queue", return_value=queue):
            self.assertEqual(self.run_cli("log-trace", trace_file), 0)
            self.assertEqual(len(queued), 2)
            self.assertEqual(queued[0]["ctx"], {"source": "traces.json"})

            queue.pop.side_effect = queued + [None]
            self.assertEqual(self.run_cli("process-queue"), 0)

        with transaction(self.session_factory()) as session:
            self.assertEqual([e.path for e in session.query(ApiEndpoint)], ["/health"])

        self.assertEqual(self.run_cli("log-trace", self.path("missing.json")), 1)

    def test_convert(self):
        swagger_file = self.path("swagger.json")
        with open(swagger_file, "w") as f:
            json.dump({"swagger": "2.0", "info": {"title": "T", "version": "1"}, "host": HOST, "paths": {}}, f)
        output = self.path("openapi.yaml")

        self.assertEqual(monitor.main(["convert", "-s", swagger_file, "-o", output]), 0)
        with open(output) as f:
            converted = yaml.safe_load(f)
        self.assertEqual(converted["openapi"], "3.0.3")
        self.assertEqual(converted["servers"], [{"url": f"https://{HOST}"}])

    def test_bad_config(self):
        self.assertEqual(monitor.main(["init-db", "-c", self.path("missing.yaml")]), 1)


class TestFetchRemoteSpec(unittest.TestCase):
    """Test cases for fetch_remote_spec."""

    def test_rejects_relative_url(self):
        with self.assertRaises(BadRequestError):
            monitor.fetch_remote_spec("specs/users.json")

    @patch("monitor.requests.get")
    def test_fetches_text(self, mock_get):
        mock_get.return_value.text = "openapi: 3.0.3"
        self.assertEqual(monitor.fetch_remote_spec("https://example.com/spec.yaml"), "openapi: 3.0.3")
        mock_get.assert_called_once_with("https://example.com/spec.yaml", timeout=30)


if __name__ == "__main__":
    unittest.main()
