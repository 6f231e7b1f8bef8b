"""Canonical supplement record models."""

from typing import Annotated, Literal

from pydantic import (
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictStr,
    model_validator,
)
from pydantic.alias_generators import to_camel

SCHEMA_VERSION = 1
UNKNOWN_PRODUCT = "Unknown Product"
UNKNOWN_BRAND = "Unknown Brand"

Category = Literal["supplement", "vitamin", "herb"]
SubCategory = Literal[
    "protein",
    "preworkout",
    "intra-workout",
    "post-workout",
    "nootropic",
    "adaptogen",
    "multivitamin",
    "single-vitamin",
    "mineral",
    "sleep",
    "stress",
    "joint",
    "immunity",
    "gut",
    "hormonal",
    "other",
]
Form = Literal["capsule", "tablet", "powder", "liquid", "gummy", "other"]
Unit = Literal["g", "mg", "mcg", "IU", "ml", "capsule", "tablet", "scoop", "%"]
SourceTag = Literal["external-catalog", "ai", "user", "combined"]
Provenance = Literal["external-catalog", "ai", "user", "combined", "auto-detected"]
Bioavailability = Literal["low", "medium", "high"]

CATEGORIES: tuple[str, ...] = ("supplement", "vitamin", "herb")
SUB_CATEGORIES: tuple[str, ...] = (
    "protein",
    "preworkout",
    "intra-workout",
    "post-workout",
    "nootropic",
    "adaptogen",
    "multivitamin",
    "single-vitamin",
    "mineral",
    "sleep",
    "stress",
    "joint",
    "immunity",
    "gut",
    "hormonal",
    "other",
)
FORMS: tuple[str, ...] = ("capsule", "tablet", "powder", "liquid", "gummy", "other")
UNITS: tuple[str, ...] = (
    "g",
    "mg",
    "mcg",
    "IU",
    "ml",
    "capsule",
    "tablet",
    "scoop",
    "%",
)
SOURCE_TAGS: tuple[str, ...] = ("external-catalog", "ai", "user", "combined")

Amount = Annotated[float, Field(strict=True, ge=0)]
PositiveAmount = Annotated[float, Field(strict=True, gt=0)]
Name = Annotated[str, Field(strict=True, min_length=1)]


class RecordModel(BaseModel):
    """Base model with camelCase aliases and immutable fields."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )


class ServingSize(RecordModel):
    """Amount and unit of a single serving."""

    amount: Amount | None = None
    unit: Unit | None = None


class Ingredient(RecordModel):
    """Single declared ingredient."""

    name: Name
    dosage: Amount | None = None
    unit: Unit | None = None
    is_standardized: StrictBool = False
    standardized_to: StrictStr | None = None


class Price(RecordModel):
    """Container price with the derived per-serving price."""

    value: Amount | None = None
    currency: StrictStr | None = None
    price_per_serving: Amount | None = None


class Quality(RecordModel):
    """Quality analysis as produced by the external analyzer."""

    under_dosed: StrictBool | None = None
    over_dosed: StrictBool | None = None
    filler_risk: StrictBool | None = None
    bioavailability: Bioavailability | None = None


class RecordMeta(RecordModel):
    """Provenance and bookkeeping for a record."""

    source: SourceTag
    verified: StrictBool = False
    last_updated: AwareDatetime
    source_map: dict[str, Provenance] = Field(default_factory=dict)


class DoseFlag(RecordModel):
    """Presence and dose of a tracked pre-workout ingredient."""

    mg: Amount | None = None
    present: StrictBool = False


class PreWorkoutData(RecordModel):
    """Pre-workout specific ingredient breakdown."""

    caffeine: DoseFlag = DoseFlag()
    beta_alanine: DoseFlag = DoseFlag()
    l_citrulline: DoseFlag = DoseFlag()
    l_arginine: DoseFlag = DoseFlag()
    l_tyrosine: DoseFlag = DoseFlag()
    taurine: DoseFlag = DoseFlag()
    theanine: DoseFlag = DoseFlag()
    creatine: DoseFlag = DoseFlag()


class HerbData(RecordModel):
    """Herbal product details."""

    plant_name: Name
    plant_part: Literal["root", "leaf", "seed", "bark", "whole", "unknown"] = "unknown"
    extract_type: Literal["powder", "extract", "tincture", "oil", "unknown"] = (
        "unknown"
    )
    extract_ratio: StrictStr | None = None
    standardization: StrictStr | None = None


class ProteinData(RecordModel):
    """Protein product details."""

    protein_type: Literal["whey", "casein", "plant", "egg", "collagen", "other"] = (
        "other"
    )
    amino_acid_profile: dict[str, Amount] | None = None
    is_complete: StrictBool | None = None
    digestibility: Literal["fast", "medium", "slow"] | None = None


class SupplementRecord(RecordModel):
    """Canonical, versioned record for one physical product."""

    schema_version: Literal[1] = SCHEMA_VERSION
    barcode: StrictStr | None = None
    product_name: Name = UNKNOWN_PRODUCT
    brand: Name = UNKNOWN_BRAND
    category: Category = "supplement"
    sub_category: SubCategory = "other"
    form: Form = "other"
    servings_per_container: PositiveAmount | None = None
    serving_size: ServingSize = ServingSize()
    ingredients: list[Ingredient] = Field(default_factory=list)
    price: Price = Price()
    quality: Quality = Quality()
    meta: RecordMeta
    pre_workout_data: PreWorkoutData | None = None
    herb_data: HerbData | None = None
    protein_data: ProteinData | None = None

    @model_validator(mode="after")
    def _check_source_map(self) -> "SupplementRecord":
        unknown = sorted(set(self.meta.source_map) - set(RECORD_FIELDS))
        if unknown:
            raise ValueError(f"sourceMap references unknown fields: {unknown}")
        return self

    def to_payload(self) -> dict[str, object]:
        """Return the JSON-ready camelCase representation."""
        return self.model_dump(mode="json", by_alias=True)


def _field_aliases(model: type[BaseModel]) -> tuple[str, ...]:
    return tuple(field.alias or name for name, field in model.model_fields.items())


RECORD_FIELDS: tuple[str, ...] = tuple(
    alias
    for alias in _field_aliases(SupplementRecord)
    if alias not in {"schemaVersion", "meta"}
)

# Values a record is created with when no source supplied the field.
FIELD_DEFAULTS: dict[str, object] = {
    "productName": UNKNOWN_PRODUCT,
    "brand": UNKNOWN_BRAND,
    "category": "supplement",
    "subCategory": "other",
    "form": "other",
}
