from __future__ import annotations

import io
import json
import unittest
from datetime import datetime
from unittest.mock import patch
from urllib import error

from ingestion.classifier import (
    classify,
    extract_json_object,
    frequent_items_from_history,
    parse_classifier_content,
    reclassify_by_brand,
)
from ingestion.errors import ClassificationApiFailure, ClassificationParseFailure


class _FakeResponse:
    def __init__(self, body: str, status: int = 200) -> None:
        self._body = body.encode("utf-8")
        self.status = status

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        return None


def _completion(content: str) -> _FakeResponse:
    return _FakeResponse(json.dumps({"choices": [{"message": {"content": content}}]}))


def _event_json(**overrides) -> str:
    payload = {
        "event_type": "insulin",
        "event_data": {"value": 6, "units": "units", "insulin_type": "basal"},
        "event_time": "2026-03-04T08:00:00-05:00",
        "confidence": 95,
    }
    payload.update(overrides)
    return json.dumps(payload)


class ParseClassifierContentTests(unittest.TestCase):
    def test_parses_complete_insulin_event(self) -> None:
        parsed = parse_classifier_content(_event_json())
        self.assertEqual(parsed.event_type, "insulin")
        self.assertEqual(parsed.event_data["insulin_type"], "basal")
        self.assertEqual(parsed.confidence, 95)
        self.assertTrue(parsed.complete)
        self.assertEqual(parsed.missing_fields, [])

    def test_extracts_object_wrapped_in_markdown(self) -> None:
        parsed = parse_classifier_content(f"Here you go:\n```json\n{_event_json()}\n```")
        self.assertEqual(parsed.event_type, "insulin")

    def test_missing_required_field_marks_incomplete(self) -> None:
        parsed = parse_classifier_content(
            _event_json(event_data={"value": 6, "units": "units"})
        )
        self.assertFalse(parsed.complete)
        self.assertEqual(parsed.missing_fields, ["insulin_type"])

    def test_keeps_event_time_wall_clock(self) -> None:
        parsed = parse_classifier_content(
            _event_json(
                event_type="sauna",
                event_data={"duration": "25"},
                event_time="2026-03-04T14:00:00-05:00",
            )
        )
        event_time = datetime.fromisoformat(parsed.event_time)
        self.assertEqual((event_time.hour, event_time.minute), (14, 0))
        self.assertEqual(parsed.event_data["duration"], "25")
        self.assertTrue(parsed.complete)

    def test_not_json_is_parse_failure_with_raw_response(self) -> None:
        with self.assertRaises(ClassificationParseFailure) as ctx:
            parse_classifier_content("I could not find an event in that text.")
        self.assertEqual(ctx.exception.raw_response, "I could not find an event in that text.")

    def test_broken_json_is_parse_failure(self) -> None:
        with self.assertRaises(ClassificationParseFailure):
            parse_classifier_content('{"event_type": "food", "event_data": {')

    def test_unknown_event_type_is_parse_failure(self) -> None:
        with self.assertRaises(ClassificationParseFailure) as ctx:
            parse_classifier_content(_event_json(event_type="meditation"))
        self.assertIsNotNone(ctx.exception.raw_response)

    def test_confidence_out_of_range_is_parse_failure(self) -> None:
        for confidence in (101, -1, "high", 87.5):
            with self.subTest(confidence=confidence):
                with self.assertRaises(ClassificationParseFailure):
                    parse_classifier_content(_event_json(confidence=confidence))

    def test_missing_confidence_is_parse_failure(self) -> None:
        payload = json.loads(_event_json())
        del payload["confidence"]
        with self.assertRaises(ClassificationParseFailure):
            parse_classifier_content(json.dumps(payload))

    def test_malformed_event_time_is_parse_failure(self) -> None:
        with self.assertRaises(ClassificationParseFailure):
            parse_classifier_content(_event_json(event_time="yesterday afternoon"))

    def test_event_data_must_be_object(self) -> None:
        with self.assertRaises(ClassificationParseFailure):
            parse_classifier_content(_event_json(event_data=["basal"]))

    def test_wrongly_typed_field_is_parse_failure(self) -> None:
        with self.assertRaises(ClassificationParseFailure):
            parse_classifier_content(
                _event_json(event_type="food", event_data={"description": {"text": "rice"}})
            )

    def test_extra_fields_are_kept(self) -> None:
        parsed = parse_classifier_content(
            _event_json(event_type="food", event_data={"description": "oatmeal", "protein": 6})
        )
        self.assertEqual(parsed.event_data["protein"], 6)

    def test_extract_json_object_rejects_arrays(self) -> None:
        with self.assertRaises(ClassificationParseFailure):
            extract_json_object("[1, 2, 3]")


class ReclassifyByBrandTests(unittest.TestCase):
    def test_branded_electrolyte_food_becomes_supplement(self) -> None:
        parsed = parse_classifier_content(
            _event_json(event_type="food", event_data={"description": "LMNT citrus"}, confidence=98)
        )
        self.assertEqual(parsed.event_type, "supplement")
        self.assertEqual(parsed.corrected_from, "food")
        self.assertEqual(parsed.event_data["name"], "LMNT citrus")
        self.assertNotIn("description", parsed.event_data)
        self.assertEqual(parsed.event_data["brand"], "LMNT")
        self.assertEqual(parsed.missing_fields, ["dosage"])

    def test_spoken_brand_form_also_reclassifies(self) -> None:
        event_type, data, corrected_from = reclassify_by_brand("food", {"description": "citrus element"})
        self.assertEqual(event_type, "supplement")
        self.assertEqual(corrected_from, "food")
        self.assertEqual(data["name"], "citrus element")

    def test_medication_brand_filed_as_supplement(self) -> None:
        event_type, data, corrected_from = reclassify_by_brand("supplement", {"name": "Advil", "dosage": "200mg"})
        self.assertEqual(event_type, "medication")
        self.assertEqual(corrected_from, "supplement")
        self.assertEqual(data["name"], "Advil")

    def test_matching_type_is_untouched(self) -> None:
        data = {"name": "Thorne Magnesium", "dosage": "200mg"}
        self.assertEqual(reclassify_by_brand("supplement", data), ("supplement", data, None))

    def test_non_product_types_are_untouched(self) -> None:
        data = {"description": "lmnt headache"}
        self.assertEqual(reclassify_by_brand("symptom", data), ("symptom", data, None))


class ClassifyHttpTests(unittest.TestCase):
    def test_posts_to_chat_completions_and_parses(self) -> None:
        with patch("ingestion.classifier.request.urlopen", return_value=_completion(_event_json())) as urlopen_mock:
            parsed = classify("6 units basal insulin", "sk-test", frequent_items=[("lmnt citrus", 4)])
        self.assertEqual(parsed.event_type, "insulin")
        req = urlopen_mock.call_args.args[0]
        self.assertTrue(req.full_url.endswith("/chat/completions"))
        self.assertEqual(req.get_header("Authorization"), "Bearer sk-test")
        body = json.loads(req.data.decode("utf-8"))
        self.assertEqual(body["messages"][1]["content"], "6 units basal insulin")
        self.assertIn('"lmnt citrus" (logged 4x)', body["messages"][0]["content"])

    def test_http_error_is_api_failure(self) -> None:
        http_error = error.HTTPError("https://example.test", 500, "boom", {}, io.BytesIO(b"{}"))
        with patch("ingestion.classifier.request.urlopen", side_effect=http_error):
            with self.assertRaises(ClassificationApiFailure) as ctx:
                classify("sauna", "sk-test")
        self.assertEqual(ctx.exception.status, 500)

    def test_network_error_is_api_failure(self) -> None:
        with patch("ingestion.classifier.request.urlopen", side_effect=error.URLError("down")):
            with self.assertRaises(ClassificationApiFailure):
                classify("sauna", "sk-test")

    def test_missing_api_key_is_api_failure_without_request(self) -> None:
        with patch("ingestion.classifier.request.urlopen") as urlopen_mock:
            with self.assertRaises(ClassificationApiFailure):
                classify("sauna", None)
        urlopen_mock.assert_not_called()

    def test_unparseable_content_is_parse_failure(self) -> None:
        with patch("ingestion.classifier.request.urlopen", return_value=_completion("no idea")):
            with self.assertRaises(ClassificationParseFailure) as ctx:
                classify("sauna", "sk-test")
        self.assertEqual(ctx.exception.raw_response, "no idea")


class FrequentItemsTests(unittest.TestCase):
    def test_counts_product_names_most_logged_first(self) -> None:
        history = [
            {"event_type": "supplement", "event_data": {"name": "LMNT Citrus"}},
            {"event_type": "supplement", "event_data": {"name": "lmnt citrus"}},
            {"event_type": "food", "event_data": {"description": "Oatmeal"}},
            {"event_type": "glucose", "event_data": {"value": 110, "units": "mg/dL"}},
            {"event_type": "medication", "event_data": {}},
        ]
        self.assertEqual(frequent_items_from_history(history), [("lmnt citrus", 2), ("oatmeal", 1)])


if __name__ == "__main__":
    unittest.main()
