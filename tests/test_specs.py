"""
Test module for spec uploads, replacement and deletion.
"""

import os
import sys
import unittest

# Add parent directory to path to import monitor modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from apidrift.alerts import create_new_endpoint_alert, list_alerts, upsert_spec_diff_alerts
from apidrift.database import transaction
from apidrift.enums import AlertType, ViolationKind
from apidrift.exceptions import ConflictError, NotFoundError, UnprocessableContractError
from apidrift.models import Alert, ApiEndpoint, ApiTrace, OpenApiSpec
from apidrift.reconcile import AlertDescriptor
from apidrift.specs import SpecService

from helpers import HOST, add_endpoint, add_spec, add_trace, make_session_factory, simple_operation, spec_text

SWAGGER_YAML = """
swagger: 2.0
info:
  title: Pets
  version: "1.0"
host: pets.example.com
basePath: /v1
schemes:
  - https
paths:
  /pets/{petId}:
    get:
      parameters:
        - name: petId
          in: path
          required: true
          type: integer
      responses:
        200:
          description: A pet
          schema:
            type: object
            properties:
              name:
                type: string
"""


class TestSpecService(unittest.TestCase):
    """Test cases for SpecService."""

    def setUp(self):
        self.session_factory = make_session_factory()
        self.service = SpecService(self.session_factory)

    def endpoints(self):
        with transaction(self.session_factory) as session:
            return [
                (e.method, e.path, e.openapi_spec_name)
                for e in session.query(ApiEndpoint).order_by(ApiEndpoint.path, ApiEndpoint.method)
            ]

    def test_upload_declares_endpoints(self):
        text = spec_text({
            "/users": {"get": simple_operation(), "post": simple_operation()},
            "/users/{id}": {"get": simple_operation()}
        })
        result = self.service.upload_spec(text, "users.json")

        self.assertEqual(len(result.created), 3)
        self.assertEqual(result.updated, [])
        self.assertEqual(result.spec.hosts, [HOST])
        self.assertEqual(result.spec.extension, "json")
        self.assertFalse(result.spec.is_auto_generated)
        self.assertEqual(self.endpoints(), [
            ("GET", "/users", "users.json"),
            ("POST", "/users", "users.json"),
            ("GET", "/users/{id}", "users.json")
        ])

    def test_upload_supersedes_traffic_endpoints(self):
        with transaction(self.session_factory) as session:
            literal = add_endpoint(session, "/users/123")
            add_trace(session, literal)
            add_trace(session, literal)
            create_new_endpoint_alert(session, literal)

        result = self.service.upload_spec(spec_text({"/users/{id}": {"get": simple_operation()}}), "users.json")

        self.assertEqual([e.path for e in result.results[0].supersedes], ["/users/123"])
        self.assertEqual(result.summary.deleted_endpoints, 1)
        self.assertEqual(result.summary.moved_traces, 2)
        self.assertEqual(self.endpoints(), [("GET", "/users/{id}", "users.json")])

        template_uuid = result.created[0].uuid
        with transaction(self.session_factory) as session:
            self.assertEqual({t.api_endpoint_uuid for t in session.query(ApiTrace)}, {template_uuid})
            self.assertEqual(session.query(Alert).count(), 0)

    def test_upload_takes_over_auto_generated_endpoints(self):
        with transaction(self.session_factory) as session:
            add_spec(session, "generated.json", is_auto_generated=True)
            add_endpoint(session, "/users/{id}", spec_name="generated.json")

        result = self.service.upload_spec(spec_text({"/users/{id}": {"get": simple_operation()}}), "users.json")

        self.assertEqual(len(result.updated), 1)
        self.assertEqual(self.endpoints(), [("GET", "/users/{id}", "users.json")])

    def test_conflict_with_other_user_spec_writes_nothing(self):
        self.service.upload_spec(spec_text({"/users/{id}": {"get": simple_operation()}}), "first.json")
        before = self.endpoints()

        text = spec_text({
            "/orders": {"get": simple_operation()},
            "/users/me": {"get": simple_operation()}
        })
        with self.assertRaises(ConflictError) as ctx:
            self.service.upload_spec(text, "second.json")

        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(ctx.exception.details["spec"], "first.json")
        self.assertEqual(self.endpoints(), before)
        with transaction(self.session_factory) as session:
            self.assertIsNone(session.get(OpenApiSpec, "second.json"))

    def test_exact_path_of_other_user_spec_conflicts(self):
        self.service.upload_spec(spec_text({"/users/{id}": {"get": simple_operation()}}), "first.json")
        with self.assertRaises(ConflictError):
            self.service.upload_spec(spec_text({"/users/{id}": {"get": simple_operation()}}), "second.json")

    def test_same_path_other_host_does_not_conflict(self):
        self.service.upload_spec(spec_text({"/users/{id}": {"get": simple_operation()}}), "first.json")
        result = self.service.upload_spec(
            spec_text({"/users/{id}": {"get": simple_operation()}}, servers=["https://other.example.com/api"]),
            "second.json"
        )
        self.assertEqual(len(result.created), 1)
        self.assertEqual(result.spec.hosts, ["other.example.com"])

    def test_reupload_replaces_spec(self):
        first = self.service.upload_spec(spec_text({"/users/{id}": {"get": simple_operation()}}), "users.json")
        second = self.service.upload_spec(spec_text({
            "/users/{id}": {"get": simple_operation()},
            "/orders": {"get": simple_operation()}
        }), "users.json")

        self.assertEqual([e.uuid for e in second.updated], [first.created[0].uuid])
        self.assertEqual([e.path for e in second.created], ["/orders"])
        self.assertEqual(second.spec.created_at, first.spec.created_at)
        self.assertGreaterEqual(second.spec.spec_updated_at, first.spec.spec_updated_at)

    def test_replace_drops_spec_diff_alerts(self):
        self.service.upload_spec(spec_text({"/users/{id}": {"get": simple_operation()}}), "users.json")
        with transaction(self.session_factory) as session:
            endpoint = session.query(ApiEndpoint).one()
            upsert_spec_diff_alerts(session, [AlertDescriptor(
                alert_type=AlertType.SPEC_DIFF_RESPONSE,
                endpoint_uuid=endpoint.uuid,
                trace_uuid=None,
                field_path="res.body.email",
                kind=ViolationKind.MISSING_FIELD,
                description="res.body.email: missing"
            )], "users.json")

        self.service.update_spec(spec_text({"/users/{id}": {"get": simple_operation()}}), "users.json")

        with transaction(self.session_factory) as session:
            self.assertEqual(list_alerts(session), [])

    def test_update_unknown_spec(self):
        with self.assertRaises(NotFoundError):
            self.service.update_spec(spec_text({}), "missing.json")

    def test_user_spec_cannot_replace_auto_generated(self):
        with transaction(self.session_factory) as session:
            add_spec(session, "generated.json", is_auto_generated=True)
        with self.assertRaises(ConflictError):
            self.service.upload_spec(spec_text({}), "generated.json")

    def test_swagger_upload_is_converted(self):
        result = self.service.upload_spec(SWAGGER_YAML, "pets.yaml")

        self.assertEqual(result.spec.extension, "yaml")
        self.assertEqual(result.spec.spec_object["openapi"], "3.0.3")
        self.assertEqual(result.spec.hosts, ["pets.example.com"])
        self.assertIn("openapi: 3.0.3", result.spec.spec)
        self.assertEqual([(e.host, e.path) for e in result.created], [("pets.example.com", "/pets/{petId}")])

    def test_unprocessable_documents(self):
        cases = {
            "no servers": (spec_text({"/users": {"get": simple_operation()}}, servers=[]), "a.json"),
            "relative server": (spec_text({"/users": {"get": simple_operation()}}, servers=["/api"]), "a.json"),
            "no version": ('{"info": {"title": "x", "version": "1"}, "paths": {}}', "a.json"),
            "old version": (spec_text({}, version="1.2"), "a.json"),
            "not json": ("{not json", "a.json"),
            "bad format": (spec_text({}), "a.txt"),
            "bad path": (spec_text({"/users/{id": {"get": simple_operation()}}), "a.json")
        }
        for name, (text, file_name) in cases.items():
            with self.subTest(name):
                with self.assertRaises(UnprocessableContractError) as ctx:
                    self.service.upload_spec(text, file_name)
                self.assertEqual(ctx.exception.status_code, 422)

        with transaction(self.session_factory) as session:
            self.assertEqual(session.query(OpenApiSpec).count(), 0)

    def test_explicit_format_overrides_file_name(self):
        result = self.service.upload_spec(spec_text({"/health": {"get": simple_operation()}}), "contract", "json")
        self.assertEqual(result.spec.name, "contract")
        self.assertEqual(len(result.created), 1)

    def test_delete_spec(self):
        self.service.upload_spec(spec_text({"/users/{id}": {"get": simple_operation()}}), "users.json")
        self.service.delete_spec("users.json")

        self.assertEqual(self.endpoints(), [("GET", "/users/{id}", None)])
        with self.assertRaises(NotFoundError):
            self.service.get_spec("users.json")

    def test_delete_errors(self):
        with self.assertRaises(NotFoundError) as ctx:
            self.service.delete_spec("missing.json")
        self.assertEqual(ctx.exception.status_code, 404)

        with transaction(self.session_factory) as session:
            add_spec(session, "generated.json", is_auto_generated=True)
        with self.assertRaises(ConflictError):
            self.service.delete_spec("generated.json")

    def test_list_specs(self):
        with transaction(self.session_factory) as session:
            add_spec(session, "generated.json", is_auto_generated=True)
        self.service.upload_spec(spec_text({}), "users.json")

        self.assertEqual([s.name for s in self.service.list_specs()], ["users.json"])
        self.assertEqual([s.name for s in self.service.list_specs(auto_generated=True)], ["generated.json"])


if __name__ == "__main__":
    unittest.main()
