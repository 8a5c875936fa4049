"""Result sets — the two sides of a reconciliation, normalized for joining.

A result set is built from a calculation batch, from persisted result
records (``CalculationResult.to_record()`` shape), or from a bare
aggregate total when the reference data has no entity breakdown.

Only ``ok`` results carry payouts into a comparison. An entity is keyed by
its external id when it has one, otherwise by its entity id. Identity keys
are trimmed, and purely numeric keys lose their leading zeros, so "00123"
and "123" join.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

from attain.errors import ResultSetLoadError
from attain.models.entity import Entity
from attain.models.results import CalculationBatch, EntityOutcome


def normalize_id(raw: Any) -> str:
    text = str(raw).strip()
    if text.isdigit():
        return str(int(text))
    return text


@dataclass(frozen=True)
class EntityPayout:
    """One entity's payout on one side of a comparison."""
    identity: str
    source_id: str
    total: Decimal
    components: Dict[str, Decimal] = field(default_factory=dict)
    component_details: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    segment: Optional[str] = None


@dataclass(frozen=True)
class ResultSet:
    """A named, parsed payout set.

    ``entities`` is None for aggregate-only reference data.
    """
    name: str
    entities: Optional[Dict[str, EntityPayout]]
    declared_total: Optional[Decimal] = None
    declared_count: int = 0

    @property
    def has_entities(self) -> bool:
        return self.entities is not None

    @property
    def has_segments(self) -> bool:
        if not self.entities:
            return False
        return all(e.segment is not None for e in self.entities.values())

    @property
    def has_components(self) -> bool:
        return bool(self.entities) and any(e.components for e in self.entities.values())

    @property
    def total(self) -> Decimal:
        if self.entities is None:
            return self.declared_total or Decimal("0")
        return sum((e.total for e in self.entities.values()), Decimal("0"))

    @property
    def count(self) -> int:
        if self.entities is None:
            return self.declared_count
        return len(self.entities)

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @staticmethod
    def aggregate_only(name: str, total: Any, count: int = 0) -> ResultSet:
        return ResultSet(
            name=name,
            entities=None,
            declared_total=_parse_decimal(total, f"{name}: total"),
            declared_count=count,
        )

    @staticmethod
    def from_batch(
        batch: CalculationBatch,
        name: Optional[str] = None,
        segment_key: Optional[str] = None,
        directory: Optional[Mapping[str, Entity]] = None,
    ) -> ResultSet:
        """Build a result set from a batch.

        Identities come from each result's external id, then from
        ``directory[entity_id].external_id``, then from the entity id. Segment
        values come from ``directory[entity_id].attributes[segment_key]``.
        """
        entities: Dict[str, EntityPayout] = {}
        for result in batch.ok_results():
            segment = None
            if segment_key and directory and result.entity_id in directory:
                value = directory[result.entity_id].attribute(segment_key)
                segment = None if value is None else str(value)
            external_id = result.external_id
            if not external_id and directory and result.entity_id in directory:
                external_id = directory[result.entity_id].external_id
            identity = normalize_id(external_id or result.entity_id)
            _check_unique(entities, identity, name or batch.batch_id)
            entities[identity] = EntityPayout(
                identity=identity,
                source_id=result.entity_id,
                total=result.total_payout,
                components={c.component_name: c.payout for c in result.components},
                component_details={c.component_name: dict(c.details) for c in result.components},
                segment=segment,
            )
        return ResultSet(name=name or batch.batch_id, entities=entities)

    @staticmethod
    def from_records(
        records: Iterable[Mapping[str, Any]],
        name: str,
        segment_key: Optional[str] = None,
    ) -> ResultSet:
        """Parse persisted result records.

        Records are keyed by ``externalId`` when present, else ``entityId``.
        The segment is read from ``record[segment_key]``, then from
        ``record["metadata"][segment_key]``.

        Raises:
            ResultSetLoadError: a record is malformed or an identity repeats.
        """
        if isinstance(records, Mapping) or isinstance(records, (str, bytes)):
            raise ResultSetLoadError(f"{name}: expected a list of result records")
        entities: Dict[str, EntityPayout] = {}
        try:
            iterator = list(records)
        except TypeError as exc:
            raise ResultSetLoadError(f"{name}: expected a list of result records") from exc

        for index, record in enumerate(iterator):
            where = f"{name}[{index}]"
            if not isinstance(record, Mapping):
                raise ResultSetLoadError(f"{where}: expected an object")
            if record.get("outcome", EntityOutcome.OK.value) != EntityOutcome.OK.value:
                continue
            raw_id = record.get("entityId")
            if raw_id is None or str(raw_id).strip() == "":
                raise ResultSetLoadError(f"{where}: entityId is required")
            key = raw_id
            external_id = record.get("externalId")
            if external_id is not None and str(external_id).strip():
                key = external_id
            total = _parse_decimal(record.get("totalPayout"), f"{where}.totalPayout")

            components: Dict[str, Decimal] = {}
            details: Dict[str, Dict[str, Any]] = {}
            raw_components = record.get("components") or []
            if not isinstance(raw_components, list):
                raise ResultSetLoadError(f"{where}.components: expected a list")
            for c_index, component in enumerate(raw_components):
                c_where = f"{where}.components[{c_index}]"
                if not isinstance(component, Mapping) or not component.get("componentName"):
                    raise ResultSetLoadError(f"{c_where}: componentName is required")
                component_name = str(component["componentName"])
                components[component_name] = _parse_decimal(component.get("payout"), f"{c_where}.payout")
                details[component_name] = dict(component.get("details") or {})

            segment = None
            if segment_key:
                value = record.get(segment_key)
                if value is None and isinstance(record.get("metadata"), Mapping):
                    value = record["metadata"].get(segment_key)
                segment = None if value is None else str(value)

            identity = normalize_id(key)
            _check_unique(entities, identity, name)
            entities[identity] = EntityPayout(
                identity=identity,
                source_id=str(raw_id),
                total=total,
                components=components,
                component_details=details,
                segment=segment,
            )
        return ResultSet(name=name, entities=entities)

    @staticmethod
    def from_file(path: Path, segment_key: Optional[str] = None) -> ResultSet:
        """Load a JSON file holding a list of records, or ``{"results": [...]}``."""
        path = Path(path)
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ResultSetLoadError(f"Invalid JSON in {path}: {exc}") from exc
        except OSError as exc:
            raise ResultSetLoadError(f"Cannot read {path}: {exc}") from exc
        if isinstance(document, Mapping):
            if "results" in document:
                document = document["results"]
            elif "total" in document:
                return ResultSet.aggregate_only(path.name, document["total"], int(document.get("count", 0)))
        return ResultSet.from_records(document, name=path.name, segment_key=segment_key)


def _check_unique(entities: Mapping[str, EntityPayout], identity: str, name: str) -> None:
    if identity in entities:
        raise ResultSetLoadError(f"{name}: duplicate entity identity '{identity}'")


def _parse_decimal(value: Any, where: str) -> Decimal:
    if value is None or isinstance(value, bool):
        raise ResultSetLoadError(f"{where}: expected a number, got {value!r}")
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ResultSetLoadError(f"{where}: expected a number, got {value!r}") from exc
    if not result.is_finite():
        raise ResultSetLoadError(f"{where}: expected a finite number, got {value!r}")
    return result
