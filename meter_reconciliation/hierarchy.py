from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence, Set

from .errors import ConfigurationError
from .models import Polarity


@dataclass
class MeterCatalog:
    """Read-only view of the meter hierarchy and polarity during a run.

    Each meter has at most one parent and no meter may be its own ancestor.
    """

    parents: Dict[str, str] = field(default_factory=dict)
    polarities: Dict[str, Polarity] = field(default_factory=dict)
    meters: Set[str] = field(default_factory=set)

    def add_meter(self, meter_id: str, polarity: Polarity = Polarity.LOAD) -> None:
        self.meters.add(meter_id)
        self.polarities[meter_id] = polarity

    def add_link(self, child_id: str, parent_id: str) -> None:
        if child_id == parent_id:
            raise ConfigurationError(f"Meter {child_id} cannot be its own parent")
        current = self.parents.get(child_id)
        if current is not None and current != parent_id:
            raise ConfigurationError(f"Meter {child_id} already has parent {current}")
        if child_id in self.ancestors(parent_id):
            raise ConfigurationError(f"Linking {child_id} under {parent_id} would create a cycle")
        self.meters.update((child_id, parent_id))
        self.parents[child_id] = parent_id

    def parent(self, meter_id: str) -> str | None:
        return self.parents.get(meter_id)

    def children(self, meter_id: str) -> List[str]:
        return sorted(child for child, parent in self.parents.items() if parent == meter_id)

    def polarity(self, meter_id: str) -> Polarity:
        return self.polarities.get(meter_id, Polarity.LOAD)

    def ancestors(self, meter_id: str) -> List[str]:
        """Parents from nearest to root."""

        chain: List[str] = []
        current = self.parents.get(meter_id)
        while current is not None:
            if current in chain:
                raise ConfigurationError(f"Cycle detected above meter {meter_id}")
            chain.append(current)
            current = self.parents.get(current)
        return chain

    def leaf_meters(self, meter_ids: Iterable[str]) -> List[str]:
        """Expand meters to the leaves below them, keeping first-seen order."""

        leaves: List[str] = []
        pending = list(meter_ids)
        seen: Set[str] = set()
        while pending:
            meter_id = pending.pop(0)
            if meter_id in seen:
                continue
            seen.add(meter_id)
            below = self.children(meter_id)
            if below:
                pending.extend(below)
            else:
                leaves.append(meter_id)
        return leaves

    def depth(self, meter_id: str) -> int:
        """Height of the subtree under ``meter_id``; leaves are 0."""

        below = self.children(meter_id)
        if not below:
            return 0
        return 1 + max(self.depth(child) for child in below)

    def parents_bottom_up(self) -> List[str]:
        """Parent meters ordered so every parent follows its own child parents."""

        parent_ids = set(self.parents.values())
        return sorted(parent_ids, key=lambda meter_id: (self.depth(meter_id), meter_id))


def catalog_from_mapping(data: Mapping[str, object]) -> MeterCatalog:
    """Build a catalog from ``{"meters": [{"id", "parent", "polarity"}]}``."""

    catalog = MeterCatalog()
    entries = data.get("meters", [])
    if not isinstance(entries, Sequence):
        raise ConfigurationError("'meters' must be a list")
    for entry in entries:
        meter_id = str(entry["id"])
        try:
            polarity = Polarity(entry.get("polarity", Polarity.LOAD.value))
        except ValueError as exc:
            raise ConfigurationError(f"Unknown polarity for meter {meter_id}: {entry.get('polarity')}") from exc
        catalog.add_meter(meter_id, polarity)
    for entry in entries:
        parent = entry.get("parent")
        if parent:
            catalog.add_link(str(entry["id"]), str(parent))
    return catalog


def load_catalog(path: str | Path) -> MeterCatalog:
    with Path(path).open(encoding="utf-8") as handle:
        return catalog_from_mapping(json.load(handle))
