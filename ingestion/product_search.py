# query external product catalogs and rank what comes back for user confirmation
# failures of a single catalog are logged and skipped; total failure is an empty list

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable
from urllib import error, parse, request

from ingestion.errors import SearchApiFailure
from ingestion.models import ProductCandidate
from ingestion.phonetics import are_phonetically_close, canonical_token, tokenize
from ingestion.registry_match import normalize_product_key

logger = logging.getLogger(__name__)

OPEN_FOOD_FACTS_URL = "https://world.openfoodfacts.org/cgi/search.pl"
USDA_SEARCH_URL = "https://api.nal.usda.gov/fdc/v1/foods/search"
_USER_AGENT = "health-event-ingestion/0.1"

# relevance dominates; catalog order only separates near ties
_RELEVANCE_WEIGHT = 0.85
_POSITION_WEIGHT = 0.15
_PRIMARY_PAGE_SIZE = 12
_VARIATION_PAGE_SIZE = 8

_USDA_NUTRIENTS = {
    "Energy": "calories",
    "Protein": "protein",
    "Carbohydrate, by difference": "carbs",
    "Total lipid (fat)": "fat",
}


def _timeout() -> float:
    return float(os.getenv("PRODUCT_SEARCH_TIMEOUT_SECONDS", "6"))


def _max_results() -> int:
    return int(os.getenv("PRODUCT_SEARCH_MAX_RESULTS", "10"))


def _get_json(url: str, source: str) -> dict[str, Any]:
    req = request.Request(url, method="GET", headers={"User-Agent": _USER_AGENT, "Accept": "application/json"})
    try:
        with request.urlopen(req, timeout=_timeout()) as response:
            body = response.read().decode("utf-8")
    except error.HTTPError as exc:
        raise SearchApiFailure(f"{source} returned status {exc.code}", source=source) from exc
    except (error.URLError, TimeoutError, OSError) as exc:
        raise SearchApiFailure(f"{source} unreachable", source=source) from exc
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        raise SearchApiFailure(f"{source} returned invalid JSON", source=source) from exc
    if not isinstance(data, dict):
        raise SearchApiFailure(f"{source} returned unexpected payload", source=source)
    return data


def match_confidence(query: str, product_name: str | None, brand: str | None) -> int:
    """Relevance of one catalog hit to the query, 0-100."""
    if not product_name:
        return 0
    query_lower = query.lower().strip()
    name_lower = product_name.lower().strip()
    brand_lower = (brand or "").lower().strip()

    if name_lower == query_lower:
        score = 100.0
    elif query_lower and query_lower in name_lower:
        score = 80.0
    else:
        query_words = query_lower.split()
        name_words = name_lower.split()
        matching = [
            word for word in query_words if any(word in other or other in word for other in name_words)
        ]
        score = (len(matching) / len(query_words)) * 60 if query_words else 0.0

    if brand_lower and brand_lower in query_lower:
        score += 20
    if are_phonetically_close(query_lower, name_lower) or (
        brand_lower and are_phonetically_close(query_lower, brand_lower)
    ):
        score += 15
    return min(100, round(score))


def phonetic_query_variations(query: str) -> list[str]:
    """Spellings of query with spoken forms swapped for their canonical brand tokens.

    ie: "citrus element" -> ["citrus lmnt"]
    """
    tokens = tokenize(query)
    canonical = [canonical_token(token) for token in tokens]
    original = " ".join(tokens)
    variations: list[str] = []
    for index, (token, replacement) in enumerate(zip(tokens, canonical)):
        if token == replacement:
            continue
        variant = " ".join(tokens[:index] + [replacement] + tokens[index + 1 :])
        if variant != original and variant not in variations:
            variations.append(variant)
    all_canonical = " ".join(canonical)
    if len(tokens) > 1 and all_canonical != original and all_canonical not in variations:
        variations.append(all_canonical)
    return variations


def _positional_score(index: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return 100.0 * (1 - index / total)


def _blend(relevance: int, index: int, total: int) -> int:
    return min(100, round(_RELEVANCE_WEIGHT * relevance + _POSITION_WEIGHT * _positional_score(index, total)))


def search_open_food_facts(query: str, limit: int = _PRIMARY_PAGE_SIZE) -> list[ProductCandidate]:
    params = parse.urlencode(
        {
            "search_terms": query,
            "search_simple": 1,
            "action": "process",
            "json": 1,
            "page_size": limit,
        }
    )
    data = _get_json(f"{OPEN_FOOD_FACTS_URL}?{params}", "openfoodfacts")
    products = data.get("products") or []
    out: list[ProductCandidate] = []
    for index, product in enumerate(products):
        if not isinstance(product, dict):
            continue
        name = product.get("product_name") or product.get("product_name_en")
        if not name:
            continue
        brand = product.get("brands") or None
        nutriments = product.get("nutriments") or {}
        nutrients = {
            "calories": nutriments.get("energy-kcal_100g"),
            "protein": nutriments.get("proteins_100g"),
            "carbs": nutriments.get("carbohydrates_100g"),
            "fat": nutriments.get("fat_100g"),
        }
        out.append(
            ProductCandidate(
                source="openfoodfacts",
                source_id=str(product["code"]) if product.get("code") else None,
                name=name,
                brand=brand,
                nutrients={key: value for key, value in nutrients.items() if value is not None},
                serving_size=product.get("serving_size"),
                confidence=_blend(match_confidence(query, name, brand), index, len(products)),
            )
        )
    return out


def search_usda(query: str, api_key: str, limit: int = _PRIMARY_PAGE_SIZE) -> list[ProductCandidate]:
    params = parse.urlencode({"api_key": api_key, "query": query, "pageSize": limit})
    data = _get_json(f"{USDA_SEARCH_URL}?{params}", "usda")
    foods = data.get("foods") or []
    out: list[ProductCandidate] = []
    for index, food in enumerate(foods):
        if not isinstance(food, dict):
            continue
        name = food.get("description")
        if not name:
            continue
        brand = food.get("brandOwner") or food.get("brandName") or None
        nutrients: dict[str, Any] = {}
        for nutrient in food.get("foodNutrients") or []:
            key = _USDA_NUTRIENTS.get(nutrient.get("nutrientName"))
            if key and nutrient.get("value") is not None:
                nutrients[key] = nutrient["value"]
        serving_size = None
        if food.get("servingSize") is not None:
            serving_size = f"{food['servingSize']} {food.get('servingSizeUnit') or ''}".strip()
        out.append(
            ProductCandidate(
                source="usda",
                source_id=str(food["fdcId"]) if food.get("fdcId") is not None else None,
                name=name,
                brand=brand,
                nutrients=nutrients,
                serving_size=serving_size,
                confidence=_blend(match_confidence(query, name, brand), index, len(foods)),
            )
        )
    return out


def candidate_key(candidate: ProductCandidate) -> str:
    name_key = normalize_product_key(candidate.name)
    brand_key = normalize_product_key(candidate.brand)
    if brand_key and brand_key not in name_key:
        return f"{brand_key} {name_key}"
    return name_key


def resolve_products(
    query: str,
    event_type_hint: str | None = None,
    usda_api_key: str | None = None,
) -> list[ProductCandidate]:
    """Search every configured catalog for query and its phonetic variations.

    Returns at most PRODUCT_SEARCH_MAX_RESULTS candidates, deduplicated by
    normalized key and ordered by confidence.
    """
    query = (query or "").strip()
    if not query:
        return []
    if usda_api_key is None:
        usda_api_key = os.getenv("USDA_API_KEY") or None

    searches: list[Callable[[], list[ProductCandidate]]] = []
    queries = [(query, _PRIMARY_PAGE_SIZE)] + [
        (variation, _VARIATION_PAGE_SIZE) for variation in phonetic_query_variations(query)
    ]
    for text, limit in queries:
        searches.append(lambda text=text, limit=limit: search_open_food_facts(text, limit))
        # USDA has no drug data
        if usda_api_key and event_type_hint != "medication":
            searches.append(lambda text=text, limit=limit: search_usda(text, usda_api_key, limit))

    candidates: list[ProductCandidate] = []
    failures = 0
    for search in searches:
        try:
            candidates.extend(search())
        except SearchApiFailure as exc:
            failures += 1
            logger.warning("Product catalog search failed", extra={"source": exc.source, "reason": str(exc)})

    best_by_key: dict[str, ProductCandidate] = {}
    for candidate in candidates:
        key = candidate_key(candidate)
        if not key:
            continue
        candidate.product_key = key
        existing = best_by_key.get(key)
        if existing is None or candidate.confidence > existing.confidence:
            best_by_key[key] = candidate

    ranked = sorted(best_by_key.values(), key=lambda item: (-item.confidence, item.product_key))
    ranked = ranked[: _max_results()]
    logger.info(
        "Product search completed",
        extra={
            "query": query,
            "searches": len(searches),
            "failed_searches": failures,
            "results_count": len(ranked),
        },
    )
    return ranked
