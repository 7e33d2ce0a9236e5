"""
Deal Entity Processor

Validates source payloads at the ingestion boundary and projects them into
normalized, persistence-ready deals.

Source payloads are loosely typed JSON. Everything is converted into strict
pydantic models here; a payload that does not match fails closed.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterable, Mapping

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from dealsync.config import Settings, settings as default_settings
from dealsync.exceptions import SchemaValidationError

logger = logging.getLogger(__name__)

# Attribute key -> named column on the normalized deal
DEFAULT_ATTRIBUTE_COLUMNS: dict[str, str] = {
    "25": "estado",
    "39": "pairs_quantity",
    "45": "seller",
    "47": "designer",
    "49": "utm_source",
    "50": "utm_medium",
}

_DMY_PATTERN = re.compile(r"^(\d{2})/(\d{2})/(\d{4})$")
_ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _to_optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SourceRecord(BaseModel):
    """One deal from the primary list endpoint."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str
    last_modified_at: datetime = Field(
        validation_alias=AliasChoices("mdate", "lastModifiedAt", "last_modified_at")
    )
    created_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("cdate", "createdAt", "created_at"),
    )
    title: str = ""
    value: float = 0.0
    currency: str | None = None
    status: str | None = None
    stage_id: str | None = Field(
        default=None, validation_alias=AliasChoices("stage", "stageId", "stage_id")
    )
    contact_id: str | None = Field(
        default=None, validation_alias=AliasChoices("contact", "contactId", "contact_id")
    )
    organization_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("organization", "organizationId", "organization_id"),
    )
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)

    @model_validator(mode="before")
    @classmethod
    def _prepare(cls, data: Any) -> Any:
        """Keep the raw payload and fall back to the creation date."""
        if not isinstance(data, Mapping):
            raise ValueError("record must be an object")
        prepared = dict(data)
        prepared.setdefault("raw", dict(data))
        modified_keys = ("mdate", "lastModifiedAt", "last_modified_at")
        if not any(prepared.get(key) for key in modified_keys):
            for key in ("cdate", "createdAt", "created_at"):
                if prepared.get(key):
                    prepared["mdate"] = prepared[key]
                    break
        return prepared

    @field_validator("id", mode="before")
    @classmethod
    def _require_id(cls, value: Any) -> str:
        if value is None or str(value).strip() == "":
            raise ValueError("id is required")
        return str(value)

    @field_validator("stage_id", "contact_id", "organization_id", "status", mode="before")
    @classmethod
    def _optional_str(cls, value: Any) -> str | None:
        return _to_optional_str(value)

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("value", mode="before")
    @classmethod
    def _value(cls, value: Any) -> Any:
        return 0.0 if value in (None, "") else value

    @field_validator("created_at", mode="before")
    @classmethod
    def _empty_date(cls, value: Any) -> Any:
        return None if value == "" else value

    @field_validator("last_modified_at", "created_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value)


class AttachedAttribute(BaseModel):
    """One sparse key/value attribute attached to a deal."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    owner_id: str = Field(validation_alias=AliasChoices("dealId", "ownerId", "owner_id"))
    attribute_key: str = Field(
        validation_alias=AliasChoices("customFieldId", "attributeKey", "attribute_key")
    )
    attribute_value: str | None = Field(
        default=None,
        validation_alias=AliasChoices("fieldValue", "attributeValue", "attribute_value"),
    )

    @field_validator("owner_id", "attribute_key", mode="before")
    @classmethod
    def _required_str(cls, value: Any) -> str:
        if value is None or str(value).strip() == "":
            raise ValueError("value is required")
        return str(value)

    @field_validator("attribute_value", mode="before")
    @classmethod
    def _value_str(cls, value: Any) -> str | None:
        return None if value is None else str(value)


class NormalizedDeal(BaseModel):
    """Persistence-ready deal, keyed by the source deal id."""

    deal_id: str
    title: str = ""
    value: float = 0.0
    currency: str = "BRL"
    status: str | None = None
    stage_id: str | None = None
    closing_date: date | None = None
    closing_date_raw: str | None = None
    created_date: datetime | None = None
    attributes: dict[str, str] = Field(default_factory=dict)
    estado: str | None = None
    pairs_quantity: str | None = None
    seller: str | None = None
    designer: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    contact_id: str | None = None
    organization_id: str | None = None
    api_updated_at: datetime
    last_synced_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sync_status: str = "synced"

    def to_row(self) -> dict[str, Any]:
        """Column values for the deals_cache upsert."""
        return self.model_dump()


@dataclass
class FingerprintUpdate:
    """Tracking state to persist for one deal once its upsert committed."""

    deal_id: str
    last_modified_at: datetime
    created_at: datetime | None = None
    has_closing_date: bool = False
    has_any_target_fields: bool = False
    target_fields_found: list[str] = field(default_factory=list)
    sync_batch_id: str | None = None


@dataclass
class ListPage:
    """One validated list page."""

    records: list[SourceRecord]
    total: int | None = None
    rejected: int = 0


def parse_closing_date(value: str | None) -> date | None:
    """
    Parse a closing date attribute.

    Accepts DD/MM/YYYY and YYYY-MM-DD. Anything else gives None.
    """
    if not value:
        return None
    value = value.strip()

    match = _DMY_PATTERN.match(value)
    try:
        if match:
            day, month, year = match.groups()
            return date(int(year), int(month), int(day))
        if _ISO_DATE_PATTERN.match(value):
            return date.fromisoformat(value)
    except ValueError:
        pass

    logger.warning("Unrecognized date format: %s", value)
    return None


class DealProcessor:
    """
    Turns raw API payloads into validated records and normalized deals.

    Handles:
    - List and attribute payload validation
    - Target attribute filtering and grouping by owner
    - Closing date conversion
    - Derived tracking flags
    """

    def __init__(
        self,
        config: Settings | None = None,
        attribute_columns: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config or default_settings
        self.records_key = self.config.list_records_key
        self.attributes_key = self.config.attribute_records_key
        self.target_keys = frozenset(self.config.target_attributes)
        self.closing_date_key = self.config.closing_date_attribute
        self.attribute_columns = dict(attribute_columns or DEFAULT_ATTRIBUTE_COLUMNS)

    # ========== Ingestion Boundary ==========

    def _items(self, payload: Any, key: str, fallback: str) -> list[Any]:
        if not isinstance(payload, Mapping):
            raise SchemaValidationError(f"Expected a JSON object, got {type(payload).__name__}")
        items = payload.get(key)
        if items is None:
            items = payload.get(fallback)
        if not isinstance(items, list):
            raise SchemaValidationError(f"Payload has no '{key}' list")
        return items

    def parse_total(self, payload: Any) -> int:
        """Read meta.total from a list response."""
        if not isinstance(payload, Mapping):
            raise SchemaValidationError("Expected a JSON object")
        meta = payload.get("meta")
        if not isinstance(meta, Mapping) or "total" not in meta:
            raise SchemaValidationError("List response has no meta.total")
        try:
            total = int(meta["total"])
        except (TypeError, ValueError) as e:
            raise SchemaValidationError(f"meta.total is not an integer: {meta['total']!r}") from e
        if total < 0:
            raise SchemaValidationError(f"meta.total is negative: {total}")
        return total

    def parse_list_page(self, payload: Any) -> ListPage:
        """
        Validate one list page.

        Malformed records are rejected one by one; a malformed page raises.
        """
        items = self._items(payload, self.records_key, "records")
        records: list[SourceRecord] = []
        rejected = 0

        for item in items:
            try:
                records.append(SourceRecord.model_validate(item))
            except ValidationError as e:
                rejected += 1
                record_id = item.get("id") if isinstance(item, Mapping) else None
                logger.warning("Rejected record %s: %s", record_id, e.errors()[0]["msg"])

        total = None
        meta = payload.get("meta")
        if isinstance(meta, Mapping) and meta.get("total") is not None:
            try:
                total = int(meta["total"])
            except (TypeError, ValueError):
                total = None

        return ListPage(records=records, total=total, rejected=rejected)

    def parse_attributes(self, payload: Any) -> tuple[list[AttachedAttribute], int]:
        """Validate one attribute response. Returns (attributes, rejected count)."""
        items = self._items(payload, self.attributes_key, "attributes")
        attributes: list[AttachedAttribute] = []
        rejected = 0

        for item in items:
            try:
                attributes.append(AttachedAttribute.model_validate(item))
            except ValidationError as e:
                rejected += 1
                logger.warning("Rejected attribute: %s", e.errors()[0]["msg"])

        return attributes, rejected

    # ========== Projection ==========

    def group_attributes(
        self,
        attributes: Iterable[AttachedAttribute],
    ) -> dict[str, dict[str, str]]:
        """
        Build owner_id -> {attribute_key: value} for target keys only.

        Later values for the same owner and key win.
        """
        grouped: dict[str, dict[str, str]] = {}
        for attribute in attributes:
            if attribute.attribute_key not in self.target_keys:
                continue
            grouped.setdefault(attribute.owner_id, {})[attribute.attribute_key] = (
                attribute.attribute_value or ""
            )
        return grouped

    def normalize(
        self,
        record: SourceRecord,
        attributes: Mapping[str, str] | None = None,
    ) -> NormalizedDeal:
        """Join a record with its attributes into a NormalizedDeal."""
        attributes = dict(attributes or {})
        closing_raw = attributes.get(self.closing_date_key) or None

        named = {
            column: (attributes.get(key) or None)
            for key, column in self.attribute_columns.items()
        }

        return NormalizedDeal(
            deal_id=record.id,
            title=record.title,
            value=record.value,
            currency=record.currency or self.config.default_currency,
            status=record.status,
            stage_id=record.stage_id,
            closing_date=parse_closing_date(closing_raw),
            closing_date_raw=closing_raw,
            created_date=record.created_at,
            attributes=attributes,
            contact_id=record.contact_id,
            organization_id=record.organization_id,
            api_updated_at=record.last_modified_at,
            **named,
        )

    def fingerprint_for(
        self,
        record: SourceRecord,
        attributes: Mapping[str, str] | None,
        sync_batch_id: str | None = None,
    ) -> FingerprintUpdate:
        """Tracking state for a record, with flags derived from its attributes."""
        attributes = attributes or {}
        found = sorted(
            (key for key, value in attributes.items() if value and key in self.target_keys),
            key=lambda key: (len(key), key),
        )
        return FingerprintUpdate(
            deal_id=record.id,
            last_modified_at=record.last_modified_at,
            created_at=record.created_at,
            has_closing_date=bool(attributes.get(self.closing_date_key)),
            has_any_target_fields=bool(found),
            target_fields_found=found,
            sync_batch_id=sync_batch_id,
        )
