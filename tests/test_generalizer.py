"""
Test module for the statistical path generalizer.
"""

import os
import sys
import unittest
from datetime import datetime, timedelta

# Add parent directory to path to import monitor modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from apidrift.database import transaction
from apidrift.exceptions import NotFoundError
from apidrift.generalizer import generalize_paths, suggest_path_templates
from apidrift.models import ApiTrace

from helpers import add_endpoint, add_trace, make_session_factory


class TestGeneralizePaths(unittest.TestCase):
    """Test cases for generalize_paths."""

    def test_empty_sample(self):
        self.assertEqual(generalize_paths([]), [])

    def test_identical_paths_stay_literal(self):
        self.assertEqual(generalize_paths(["/users/me/settings"] * 25), [("/users/me/settings", 1.0)])

    def test_root_path(self):
        self.assertEqual(generalize_paths(["/", "/"]), [("/", 1.0)])

    def test_token_in_exactly_ten_percent_stays_literal(self):
        paths = ["/users/list"] * 9 + ["/users/export"]
        templates = dict(generalize_paths(paths))

        self.assertIn("/users/export", templates)
        self.assertNotIn("/users/{param1}", templates)
        self.assertAlmostEqual(templates["/users/list"], (1.0 + 0.9) / 2)
        self.assertAlmostEqual(templates["/users/export"], (1.0 + 0.1) / 2)

    def test_token_below_ten_percent_is_parameterized(self):
        paths = ["/users/list"] * 10 + ["/users/export"]
        templates = dict(generalize_paths(paths))

        self.assertIn("/users/{param1}", templates)
        self.assertIn("/users/list", templates)
        self.assertNotIn("/users/export", templates)

    def test_unique_ids_become_parameters(self):
        paths = [f"/users/{i}/orders/{i * 7}" for i in range(20)]
        result = generalize_paths(paths)

        self.assertEqual(len(result), 1)
        template, confidence = result[0]
        self.assertEqual(template, "/users/{param1}/orders/{param2}")
        self.assertAlmostEqual(confidence, (1.0 + 0.05 + 1.0 + 0.05) / 4)

    def test_best_confidence_first(self):
        paths = ["/a/b"] * 15 + [f"/a/{i}" for i in range(5)]
        result = generalize_paths(paths)

        self.assertEqual([t for t, _ in result], ["/a/b", "/a/{param1}"])
        self.assertGreater(result[0][1], result[1][1])

    def test_custom_threshold(self):
        paths = ["/v1/items"] * 7 + ["/v2/items"] * 3
        self.assertIn("/{param1}/items", dict(generalize_paths(paths, threshold=0.5)))
        self.assertNotIn("/{param1}/items", dict(generalize_paths(paths)))


class TestSuggestPathTemplates(unittest.TestCase):
    """Test cases for suggest_path_templates."""

    def setUp(self):
        self.session_factory = make_session_factory()

    def test_unknown_endpoint(self):
        with transaction(self.session_factory) as session:
            with self.assertRaises(NotFoundError):
                suggest_path_templates(session, "missing")

    def test_no_traffic(self):
        with transaction(self.session_factory) as session:
            endpoint = add_endpoint(session, "/users/{id}")
            self.assertEqual(suggest_path_templates(session, endpoint.uuid), [])

    def test_suggestions_from_recent_traces(self):
        start = datetime(2024, 1, 1)
        with transaction(self.session_factory) as session:
            endpoint = add_endpoint(session, "/users/{id}")
            for i in range(30):
                add_trace(session, endpoint, path=f"/users/{1000 + i}", created_at=start + timedelta(minutes=i))

        with transaction(self.session_factory) as session:
            suggestions = suggest_path_templates(session, endpoint.uuid)
            trace_count = session.query(ApiTrace).count()

        self.assertEqual(suggestions, [{"template": "/users/{param1}", "confidence": (1.0 + 1 / 30) / 2}])
        self.assertEqual(trace_count, 30)

    def test_sample_is_limited_to_most_recent(self):
        start = datetime(2024, 1, 1)
        with transaction(self.session_factory) as session:
            endpoint = add_endpoint(session, "/users/{id}")
            for i in range(5):
                add_trace(session, endpoint, path=f"/users/{i}", created_at=start + timedelta(minutes=i))
            for i in range(5):
                add_trace(session, endpoint, path="/users/me", created_at=start + timedelta(hours=1, minutes=i))

        with transaction(self.session_factory) as session:
            suggestions = suggest_path_templates(session, endpoint.uuid, trace_limit=5)

        self.assertEqual(suggestions, [{"template": "/users/me", "confidence": 1.0}])

    def test_max_suggestions(self):
        start = datetime(2024, 1, 1)
        with transaction(self.session_factory) as session:
            endpoint = add_endpoint(session, "/{a}/y")
            for i in range(4):
                add_trace(session, endpoint, path=f"/x{i}/y", created_at=start + timedelta(minutes=i))

        with transaction(self.session_factory) as session:
            suggestions = suggest_path_templates(session, endpoint.uuid, threshold=0.2, max_suggestions=2)

        # 25% occurrence is above the threshold, so every path stays literal
        self.assertEqual(
            suggestions,
            [{"template": "/x3/y", "confidence": 0.625}, {"template": "/x2/y", "confidence": 0.625}]
        )


if __name__ == "__main__":
    unittest.main()
