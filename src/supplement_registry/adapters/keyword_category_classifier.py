"""Rule-based category classifier backed by an ingredient knowledge base."""

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from supplement_registry.domain.classification import CategoryResult
from supplement_registry.services.classification import CategoryClassifier

KNOWLEDGE_BASE_CONFIDENCE = 0.9
DOSAGE_TABLE_CONFIDENCE = 0.85
HEURISTIC_CONFIDENCE = 0.6
FALLBACK_CONFIDENCE = 0.3

# Ingredient name -> (category, subCategory).
KNOWN_INGREDIENTS: tuple[tuple[str, str, str], ...] = (
    ("magnesium bisglycinate", "vitamin", "mineral"),
    ("magnesium glycinate", "vitamin", "mineral"),
    ("magnesium malate", "vitamin", "mineral"),
    ("magnesium citrate", "vitamin", "mineral"),
    ("magnesium oxide", "vitamin", "mineral"),
    ("cholecalciferol", "vitamin", "single-vitamin"),
    ("ergocalciferol", "vitamin", "single-vitamin"),
    ("whey protein isolate", "supplement", "protein"),
    ("whey protein concentrate", "supplement", "protein"),
    ("casein protein", "supplement", "protein"),
    ("triglyceride form", "supplement", "other"),
    ("ethyl ester", "supplement", "other"),
    ("essential amino acids", "supplement", "protein"),
    ("branched chain amino acids", "supplement", "protein"),
    ("caffeine", "supplement", "preworkout"),
    ("beta-alanine", "supplement", "preworkout"),
    ("l-citrulline", "supplement", "preworkout"),
    ("ashwagandha", "herb", "adaptogen"),
    ("rhodiola", "herb", "adaptogen"),
    ("melatonin", "supplement", "sleep"),
)

# Active ingredient of a dosage group -> (category, subCategory).
DOSAGE_GROUPS: tuple[tuple[str, str, str], ...] = (
    ("magnesium", "vitamin", "mineral"),
    ("vitamin d3", "vitamin", "single-vitamin"),
    ("protein", "supplement", "protein"),
    ("epa", "supplement", "other"),
    ("dha", "supplement", "other"),
    ("creatine", "supplement", "other"),
    ("amino acids", "supplement", "protein"),
)

CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "vitamin": (
        "vitamin", "d3", "b12", "b6", "b1", "b2", "b3", "b5", "b7", "b9",
        "cholecalciferol", "ergocalciferol", "folic acid", "biotin", "pantothenic",
    ),
    "herb": (
        "ashwagandha", "ginkgo", "ginseng", "rhodiola", "turmeric", "extract",
        "standardized", "milk thistle", "echinacea", "valerian", "passionflower",
        "bacopa", "brahmi", "adaptogen",
    ),
    "supplement": (
        "protein", "creatine", "bcaa", "amino", "pre-workout", "caffeine",
        "beta-alanine", "citrulline", "arginine", "glutamine", "carnitine",
    ),
}  # fmt: skip

SUB_CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "protein": ("whey", "casein", "protein", "isolate", "concentrate"),
    "preworkout": ("pre-workout", "caffeine", "energy", "pump", "focus"),
    "intra-workout": ("intra", "during", "bcaa", "eaa", "hydration"),
    "post-workout": ("post", "recovery", "glutamine", "repair"),
    "nootropic": ("brain", "cognitive", "focus", "memory", "alpha-gpc"),
    "adaptogen": ("ashwagandha", "rhodiola", "ginseng", "stress", "cortisol"),
    "multivitamin": ("multivitamin", "multi", "complete", "daily"),
    "single-vitamin": ("vitamin d", "vitamin b", "vitamin c", "single"),
    "mineral": ("magnesium", "zinc", "iron", "calcium", "mineral"),
    "sleep": ("melatonin", "sleep", "night", "calm", "relaxation"),
    "stress": ("cortisol", "stress", "anxiety", "calm", "gaba"),
    "joint": ("glucosamine", "chondroitin", "joint", "collagen", "msm"),
    "immunity": ("immune", "immunity", "vitamin c", "zinc", "elderberry"),
    "gut": ("probiotic", "digestive", "enzyme", "gut", "prebiotic"),
    "hormonal": ("testosterone", "hormone", "daa", "tribulus", "maca"),
}

_NON_WORD = re.compile(r"[^a-z0-9\s-]")
_SPACES = re.compile(r"\s+")
_UNITS = re.compile(r"\b(mg|g|mcg|iu|ml)\b")
_MIN_PARTIAL = 4


@dataclass
class KeywordCategoryClassifier(CategoryClassifier):
    """Detects categories from a knowledge base, then keywords, then heuristics."""

    def classify(
        self, product_name: str, ingredients: Sequence[Mapping[str, object]]
    ) -> CategoryResult:
        """Return the most confident category guess."""
        names = [normalize_text(str(item.get("name") or "")) for item in ingredients]
        names = [name for name in names if name]
        known = self._match_knowledge_base(names)
        if known is not None:
            return known
        text = normalize_text(" ".join([product_name or "", *names]))
        keyword = self._match_keywords(text)
        if keyword is not None and keyword.confidence >= 0.5:
            return keyword
        heuristic = self._heuristic(text)
        if keyword is not None and (
            heuristic is None or keyword.confidence > heuristic.confidence
        ):
            return keyword
        if heuristic is not None:
            return heuristic
        return CategoryResult(
            "supplement", "other", FALLBACK_CONFIDENCE, reasoning="No category detected"
        )

    def _match_knowledge_base(self, names: list[str]) -> CategoryResult | None:
        for table, confidence in (
            (KNOWN_INGREDIENTS, KNOWLEDGE_BASE_CONFIDENCE),
            (DOSAGE_GROUPS, DOSAGE_TABLE_CONFIDENCE),
        ):
            for name in names:
                for key, category, sub_category in table:
                    if key in name or (len(name) >= _MIN_PARTIAL and name in key):
                        return CategoryResult(
                            category=category,
                            sub_category=sub_category,
                            confidence=confidence,
                            reasoning=f'Matched ingredient "{key}"',
                        )
        return None

    def _match_keywords(self, text: str) -> CategoryResult | None:
        category = _best_match(text, CATEGORY_KEYWORDS)
        if category is None:
            return None
        sub_category = _best_match(text, SUB_CATEGORY_KEYWORDS)
        sub_name, sub_score = sub_category or ("other", 0.0)
        return CategoryResult(
            category=category[0],
            sub_category=sub_name,
            confidence=min(category[1] + sub_score, 1.0),
            reasoning=f"Keyword match {category[0]}/{sub_name}",
        )

    def _heuristic(self, text: str) -> CategoryResult | None:
        if "protein" in text or "whey" in text:
            return CategoryResult("supplement", "protein", HEURISTIC_CONFIDENCE)
        if "vitamin" in text or "d3" in text:
            return CategoryResult("vitamin", "single-vitamin", HEURISTIC_CONFIDENCE)
        if "extract" in text or "standardized" in text:
            return CategoryResult("herb", "other", HEURISTIC_CONFIDENCE)
        return None


def normalize_text(value: str) -> str:
    """Lowercase, strip punctuation and unit tokens, collapse whitespace."""
    text = _NON_WORD.sub(" ", value.lower().strip())
    text = _SPACES.sub(" ", text)
    return _SPACES.sub(" ", _UNITS.sub("", text)).strip()


def _best_match(
    text: str, table: Mapping[str, Sequence[str]]
) -> tuple[str, float] | None:
    best: tuple[str, float] | None = None
    for label, keywords in table.items():
        hits = sum(1 for keyword in keywords if normalize_text(keyword) in text)
        if not hits:
            continue
        score = hits / len(keywords)
        if best is None or score > best[1]:
            best = (label, score)
    return best
