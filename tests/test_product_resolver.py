from __future__ import annotations

import json
import unittest
from unittest.mock import patch
from urllib import error
from urllib.parse import parse_qs, urlparse

import ingestion.product_search as product_search_mod
from ingestion.errors import SearchApiFailure
from ingestion.models import ProductCandidate
from ingestion.product_search import (
    candidate_key,
    match_confidence,
    phonetic_query_variations,
    resolve_products,
    search_open_food_facts,
    search_usda,
)


class _FakeResponse:
    def __init__(self, payload) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        return None


def _candidate(name: str, brand: str | None = None, confidence: int = 50, source: str = "openfoodfacts") -> ProductCandidate:
    return ProductCandidate(source=source, source_id=name, name=name, brand=brand, confidence=confidence)


class MatchConfidenceTests(unittest.TestCase):
    def test_exact_name_scores_100(self) -> None:
        self.assertEqual(match_confidence("lmnt citrus salt", "LMNT Citrus Salt", None), 100)

    def test_contained_query_scores_80_plus_phonetic_boost(self) -> None:
        self.assertEqual(match_confidence("oat milk", "Organic Oat Milk Barista", None), 95)

    def test_brand_in_query_boosts(self) -> None:
        # half the query words match; the brand adds its own boost and a phonetic one
        self.assertEqual(match_confidence("thorne magnesium", "Magnesium Bisglycinate", None), 30)
        self.assertEqual(match_confidence("thorne magnesium", "Magnesium Bisglycinate", "Thorne"), 65)

    def test_phonetic_closeness_boosts(self) -> None:
        # "element" and "lmnt" share a consonant skeleton
        self.assertEqual(match_confidence("element", "Other Product", "LMNT"), 15)

    def test_capped_at_100_and_zero_without_name(self) -> None:
        self.assertEqual(match_confidence("now vitamin d", "NOW Vitamin D", "NOW"), 100)
        self.assertEqual(match_confidence("anything", None, "NOW"), 0)


class QueryVariationTests(unittest.TestCase):
    def test_spoken_brand_swapped_for_canonical(self) -> None:
        self.assertEqual(phonetic_query_variations("citrus element"), ["citrus lmnt"])

    def test_each_token_and_all_tokens(self) -> None:
        self.assertEqual(
            phonetic_query_variations("element basil"),
            ["lmnt basil", "element basal", "lmnt basal"],
        )

    def test_plain_query_has_no_variations(self) -> None:
        self.assertEqual(phonetic_query_variations("vitamin d"), [])


class CatalogParsingTests(unittest.TestCase):
    def test_open_food_facts_rows(self) -> None:
        payload = {
            "products": [
                {
                    "code": "850002",
                    "product_name": "LMNT Citrus Salt",
                    "brands": "LMNT",
                    "serving_size": "6 g",
                    "nutriments": {"energy-kcal_100g": 0, "carbohydrates_100g": 0},
                },
                {"code": "1", "product_name": ""},
            ]
        }
        with patch("ingestion.product_search.request.urlopen", return_value=_FakeResponse(payload)) as urlopen_mock:
            rows = search_open_food_facts("lmnt citrus salt")
        self.assertEqual(len(rows), 1)
        row = rows[0]
        self.assertEqual(row.source, "openfoodfacts")
        self.assertEqual(row.source_id, "850002")
        self.assertEqual(row.serving_size, "6 g")
        self.assertEqual(row.nutrients, {"calories": 0, "carbs": 0})
        self.assertEqual(row.confidence, 100)
        query = parse_qs(urlparse(urlopen_mock.call_args.args[0].full_url).query)
        self.assertEqual(query["search_terms"], ["lmnt citrus salt"])

    def test_usda_rows(self) -> None:
        payload = {
            "foods": [
                {
                    "fdcId": 2345,
                    "description": "Oatmeal",
                    "brandOwner": "Quaker",
                    "servingSize": 40,
                    "servingSizeUnit": "g",
                    "foodNutrients": [
                        {"nutrientName": "Energy", "value": 150},
                        {"nutrientName": "Protein", "value": 5},
                        {"nutrientName": "Iron, Fe", "value": 2},
                    ],
                }
            ]
        }
        with patch("ingestion.product_search.request.urlopen", return_value=_FakeResponse(payload)):
            rows = search_usda("oatmeal", "usda-key")
        self.assertEqual(rows[0].source_id, "2345")
        self.assertEqual(rows[0].serving_size, "40 g")
        self.assertEqual(rows[0].nutrients, {"calories": 150, "protein": 5})

    def test_http_failure_is_search_api_failure(self) -> None:
        with patch("ingestion.product_search.request.urlopen", side_effect=error.URLError("down")):
            with self.assertRaises(SearchApiFailure) as ctx:
                search_open_food_facts("oatmeal")
        self.assertEqual(ctx.exception.source, "openfoodfacts")


class ResolveProductsTests(unittest.TestCase):
    def setUp(self) -> None:
        self._orig_off = product_search_mod.search_open_food_facts
        self._orig_usda = product_search_mod.search_usda
        self.off_queries: list[str] = []
        self.usda_queries: list[str] = []
        self._env = patch.dict("os.environ", {"USDA_API_KEY": ""})
        self._env.start()

    def tearDown(self) -> None:
        self._env.stop()
        product_search_mod.search_open_food_facts = self._orig_off
        product_search_mod.search_usda = self._orig_usda

    def test_total_failure_returns_empty_list(self) -> None:
        def failing(query, limit=12):
            raise SearchApiFailure("down", source="openfoodfacts")

        product_search_mod.search_open_food_facts = failing
        self.assertEqual(resolve_products("lmnt citrus", "supplement", usda_api_key=None), [])

    def test_searches_variations_dedupes_and_ranks(self) -> None:
        def fake_off(query, limit=12):
            self.off_queries.append(query)
            if query == "citrus lmnt":
                return [_candidate("Citrus Salt", "LMNT", 90), _candidate("Citrus LMNT Salt", None, 40)]
            return [_candidate("Citrus Salt", "LMNT", 60), _candidate("Citrus Soda", None, 70)]

        product_search_mod.search_open_food_facts = fake_off
        results = resolve_products("citrus element", "supplement", usda_api_key=None)
        self.assertEqual(self.off_queries, ["citrus element", "citrus lmnt"])
        self.assertEqual([row.confidence for row in results], [90, 70, 40])
        self.assertEqual(results[0].product_key, "lmnt citrus salt")
        self.assertEqual(results[1].name, "Citrus Soda")

    def test_one_catalog_failing_keeps_the_other(self) -> None:
        def failing(query, limit=12):
            raise SearchApiFailure("down", source="openfoodfacts")

        def fake_usda(query, api_key, limit=12):
            self.usda_queries.append(query)
            return [_candidate("Oatmeal", None, 80, source="usda")]

        product_search_mod.search_open_food_facts = failing
        product_search_mod.search_usda = fake_usda
        results = resolve_products("oatmeal", "food", usda_api_key="key")
        self.assertEqual([row.source for row in results], ["usda"])

    def test_usda_skipped_for_medication_and_without_key(self) -> None:
        product_search_mod.search_open_food_facts = lambda query, limit=12: []

        def fake_usda(query, api_key, limit=12):
            self.usda_queries.append(query)
            return []

        product_search_mod.search_usda = fake_usda
        resolve_products("ibuprofen", "medication", usda_api_key="key")
        with patch.dict("os.environ", {"USDA_API_KEY": ""}):
            resolve_products("oatmeal", "food")
        self.assertEqual(self.usda_queries, [])

    def test_truncates_to_max_results(self) -> None:
        product_search_mod.search_open_food_facts = lambda query, limit=12: [
            _candidate(f"Product {index}", None, index) for index in range(30)
        ]
        with patch.dict("os.environ", {"PRODUCT_SEARCH_MAX_RESULTS": "10"}):
            results = resolve_products("product", "food", usda_api_key=None)
        self.assertEqual(len(results), 10)
        self.assertEqual(results[0].confidence, 29)

    def test_blank_query_is_empty(self) -> None:
        self.assertEqual(resolve_products("  "), [])


class CandidateKeyTests(unittest.TestCase):
    def test_brand_prefixed_when_missing_from_name(self) -> None:
        self.assertEqual(candidate_key(_candidate("Citrus Salt", "LMNT")), "lmnt citrus salt")
        self.assertEqual(candidate_key(_candidate("LMNT Citrus Salt", "LMNT")), "lmnt citrus salt")
        self.assertEqual(candidate_key(_candidate("Oatmeal")), "oatmeal")


if __name__ == "__main__":
    unittest.main()
