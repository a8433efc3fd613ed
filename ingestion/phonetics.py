# phonetic equivalence for brand names and terms that speech-to-text mangles
# ie: "citrus element" is how a transcriber hears "citrus LMNT"
# extend _EQUIVALENCE_CLASSES to teach new pairs; matching code only goes through phonetic_variants_of

from __future__ import annotations

import re
from difflib import SequenceMatcher

# canonical spelling -> spoken/transcribed forms
_EQUIVALENCE_CLASSES: dict[str, tuple[str, ...]] = {
    # electrolyte / supplement brands
    "lmnt": ("element", "elements", "elemnt", "lment"),
    "nuun": ("noon", "nun"),
    "thorne": ("thorn", "thorns"),
    "jarrow": ("jarro", "jaro", "jarow"),
    "momentous": ("momentus", "mementous"),
    "magtein": ("magteen", "magtine", "magtien"),
    "creatine": ("creatin", "kreatine"),
    "ashwagandha": ("ashwaganda", "ashwagonda"),
    "coq10": ("coq", "cokyu"),
    # medications
    "advil": ("advill", "adville"),
    "tylenol": ("tylenal", "tilenol", "tylenoll"),
    "zyrtec": ("zertec", "zirtec", "zyrtek"),
    "nyquil": ("nightquil", "niquil"),
    "dayquil": ("daquil", "dayquill"),
    "metformin": ("metforman", "metaformin"),
    # insulin vocabulary
    "basal": ("basil",),
    "bolus": ("bolas", "bowlus"),
    "humalog": ("humalogue", "humilog"),
    "novolog": ("novalog", "novologue"),
    "lantus": ("lantis", "lantos"),
}

_TOKEN_TO_CANONICAL: dict[str, str] = {}
for _canonical, _spoken in _EQUIVALENCE_CLASSES.items():
    _TOKEN_TO_CANONICAL[_canonical] = _canonical
    for _form in _spoken:
        _TOKEN_TO_CANONICAL[_form] = _canonical

_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")
_VOWEL_RE = re.compile(r"[aeiou]")


def tokenize(text: str | None) -> list[str]:
    if not text:
        return []
    return [token for token in _TOKEN_SPLIT_RE.split(text.lower()) if token]


def canonical_token(token: str) -> str:
    value = token.strip().lower()
    return _TOKEN_TO_CANONICAL.get(value, value)


def phonetic_variants_of(token: str) -> set[str]:
    """Return every spelling equivalent to token, token itself included.

    Tokens outside the table only map to themselves.
    """
    value = token.strip().lower()
    canonical = _TOKEN_TO_CANONICAL.get(value)
    if canonical is None:
        return {value}
    return {canonical, *_EQUIVALENCE_CLASSES[canonical]}


def consonant_skeleton(text: str) -> str:
    return _VOWEL_RE.sub("", text.lower())


def are_phonetically_close(left: str, right: str) -> bool:
    # vowel-stripped containment: "element" -> "lmnt" and "lmnt" -> "lmnt"
    left_skeleton = consonant_skeleton(left).replace(" ", "")
    right_skeleton = consonant_skeleton(right).replace(" ", "")
    if len(left_skeleton) < 3 or len(right_skeleton) < 3:
        return False
    return left_skeleton in right_skeleton or right_skeleton in left_skeleton


def detect_phonetic_transformation(user_text: str | None, model_text: str | None) -> bool:
    # true when the model swapped a user word for a registered equivalent instead of echoing it
    user_tokens = tokenize(user_text)
    model_tokens = set(tokenize(model_text))
    if not user_tokens or not model_tokens:
        return False
    for token in user_tokens:
        if token in model_tokens:
            continue
        if (phonetic_variants_of(token) - {token}) & model_tokens:
            return True
    return False


def token_similarity(left: str, right: str) -> float:
    left_canonical = canonical_token(left)
    right_canonical = canonical_token(right)
    if left_canonical == right_canonical:
        return 1.0
    return SequenceMatcher(None, left_canonical, right_canonical).ratio()
