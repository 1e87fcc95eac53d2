"""
DDI Definitions
===============

Typed drug-drug interaction definitions loaded from ddi_definitions.yaml.

A definition names 2 or 3 components, each drawing medication episodes from
one drug list. Per-definition special cases (aspirin exclusion, calcium
channel blocker class exclusion, ...) are carried as component-level
exclusion lists instead of branching on the definition name.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


class DefinitionConfigError(ValueError):
    """A DDI definition is malformed or references an undefined drug list."""

    def __init__(self, ddi_id: Optional[str], message: str):
        self.ddi_id = ddi_id
        self.message = message
        super().__init__(f"DDI definition '{ddi_id}': {message}")

    def __reduce__(self):
        return (type(self), (self.ddi_id, self.message))


@dataclass(frozen=True)
class ComponentSpec:
    """One component of a DDI definition."""

    list_id: str
    exclude_core_drugs: Tuple[str, ...] = ()
    exclude_classes: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict, ddi_id: Optional[str] = None) -> 'ComponentSpec':
        if not isinstance(data, dict) or not data.get('list_id'):
            raise DefinitionConfigError(ddi_id, f"component without list_id: {data!r}")

        return cls(
            list_id=str(data['list_id']),
            exclude_core_drugs=tuple(
                str(d).upper().strip() for d in data.get('exclude_core_drugs') or []
            ),
            exclude_classes=tuple(
                str(c).strip() for c in data.get('exclude_classes') or []
            ),
        )


@dataclass(frozen=True)
class DDIDefinition:
    """A pair or triple of drug components whose concurrent use is measured."""

    ddi_id: str
    components: Tuple[ComponentSpec, ...]
    label: str = ''
    require_distinct_class: bool = True

    @property
    def n_components(self) -> int:
        return len(self.components)

    @property
    def list_ids(self) -> List[str]:
        return [c.list_id for c in self.components]

    @property
    def same_list(self) -> bool:
        """True if at least two components draw from the same drug list."""
        return len(set(self.list_ids)) < len(self.list_ids)

    def list_groups(self) -> List[List[int]]:
        """
        Group 1-based component positions sharing a drug list.

        Exclusions do not split a group. Only groups with two or more members
        are returned; these are the positions whose episodes must be
        canonicalized to remove reverse-duplicate join rows.
        """
        groups: Dict[str, List[int]] = {}
        for k, component in enumerate(self.components, start=1):
            groups.setdefault(component.list_id, []).append(k)
        return [positions for positions in groups.values() if len(positions) > 1]

    def validate(self, drug_lists: Dict) -> None:
        """
        Check the definition against the loaded drug lists.

        Args:
            drug_lists: Mapping list_id -> list definition

        Raises:
            DefinitionConfigError: If the definition cannot be run
        """
        if self.n_components not in (2, 3):
            raise DefinitionConfigError(
                self.ddi_id,
                f"expected 2 or 3 components, got {self.n_components}",
            )

        for k, component in enumerate(self.components, start=1):
            if component.list_id not in drug_lists:
                raise DefinitionConfigError(
                    self.ddi_id,
                    f"component {k} references undefined drug list '{component.list_id}'",
                )
            entries = drug_lists[component.list_id].get('drugs') or []
            if not entries:
                raise DefinitionConfigError(
                    self.ddi_id,
                    f"drug list '{component.list_id}' (component {k}) is empty",
                )

            remaining = [
                e for e in entries
                if str(e.get('core_drug', '')).upper().strip() not in component.exclude_core_drugs
                and str(e.get('drug_class', '')).strip() not in component.exclude_classes
            ]
            if not remaining:
                raise DefinitionConfigError(
                    self.ddi_id,
                    f"component {k} excludes every drug of list '{component.list_id}'",
                )

    @classmethod
    def from_dict(cls, data: Dict) -> 'DDIDefinition':
        ddi_id = data.get('ddi_id') if isinstance(data, dict) else None
        if not ddi_id:
            raise DefinitionConfigError(None, f"definition without ddi_id: {data!r}")

        raw_components = data.get('components') or []
        if not isinstance(raw_components, list):
            raise DefinitionConfigError(ddi_id, "components must be a list")

        return cls(
            ddi_id=str(ddi_id),
            components=tuple(ComponentSpec.from_dict(c, ddi_id) for c in raw_components),
            label=str(data.get('label', '')),
            require_distinct_class=bool(data.get('require_distinct_class', True)),
        )


def collect_definitions(raw: Dict) -> Tuple[List[DDIDefinition], List[DefinitionConfigError]]:
    """
    Parse the ddi_definitions.yaml payload entry by entry.

    A malformed entry or a repeated ddi_id is set aside as a
    DefinitionConfigError; the remaining entries still parse.

    Args:
        raw: Loaded YAML dictionary with a 'definitions' list

    Returns:
        (definitions in file order, errors in file order)
    """
    definitions = []
    errors = []
    seen = set()

    for i, entry in enumerate(raw.get('definitions') or []):
        try:
            definition = DDIDefinition.from_dict(entry)
        except DefinitionConfigError as e:
            if e.ddi_id is None:
                e = DefinitionConfigError(f"definitions[{i}]", "definition without ddi_id")
            errors.append(e)
            continue

        if definition.ddi_id in seen:
            errors.append(DefinitionConfigError(definition.ddi_id, "duplicate ddi_id"))
            continue
        seen.add(definition.ddi_id)
        definitions.append(definition)

    return definitions, errors


def parse_definitions(raw: Dict) -> List[DDIDefinition]:
    """
    Parse the ddi_definitions.yaml payload, rejecting any malformed entry.

    Raises:
        DefinitionConfigError: For the first malformed entry
    """
    definitions, errors = collect_definitions(raw)
    if errors:
        raise errors[0]
    return definitions
