"""
Dependency graph and source catalog for the OMOP CDM 5.3 bulk load.

Each table declares the tables it depends on; the load order is derived from
that graph rather than written out by hand. Ties are broken by declaration
order, so the result is deterministic and matches the tier layout below.
"""
from __future__ import annotations

import heapq
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

VOCAB = "vocab"
PATIENT = "patient"

TAB = "\t"
COMMA = ","


@dataclass(frozen=True)
class FileFormat:
    delimiter: str
    header: bool
    date_format: Optional[str] = None

    def __post_init__(self) -> None:
        if self.delimiter not in (TAB, COMMA):
            raise ValueError(f"Unsupported delimiter {self.delimiter!r}; expected comma or tab")

    @property
    def is_tab(self) -> bool:
        return self.delimiter == TAB


VOCAB_FORMAT = FileFormat(delimiter=TAB, header=False)
PATIENT_FORMAT = FileFormat(delimiter=COMMA, header=True)


@dataclass(frozen=True)
class TableSource:
    table: str
    tier: str
    dataset: str
    file_name: str

    @property
    def file_format(self) -> FileFormat:
        return VOCAB_FORMAT if self.dataset == VOCAB else PATIENT_FORMAT


TIER_DESCRIPTIONS = {
    "vocabulary": "vocabulary reference tables (no dependencies)",
    "concept": "concept table (depends on vocabulary, domain, concept_class)",
    "concept_relationship": "concept relationship tables (depend on concept)",
    "drug": "drug strength (depends on concept)",
    "person": "person table (base patient table)",
    "clinical_event": "clinical event tables (depend on person and concept)",
    "health_system": "health system tables",
    "health_economics": "health economics tables",
    "derived": "era and cohort tables (depend on clinical events)",
    "metadata": "CDM metadata tables",
}

# table -> (tier, dataset, prerequisites); insertion order is the tie-breaker.
TABLE_DEPENDENCIES: Dict[str, tuple] = {
    "vocabulary": ("vocabulary", VOCAB, ()),
    "domain": ("vocabulary", VOCAB, ()),
    "concept_class": ("vocabulary", VOCAB, ()),
    "relationship": ("vocabulary", VOCAB, ()),
    "concept": ("concept", VOCAB, ("vocabulary", "domain", "concept_class")),
    "concept_relationship": ("concept_relationship", VOCAB, ("concept", "relationship")),
    "concept_synonym": ("concept_relationship", VOCAB, ("concept",)),
    "concept_ancestor": ("concept_relationship", VOCAB, ("concept",)),
    "source_to_concept_map": ("concept_relationship", VOCAB, ("concept", "vocabulary")),
    "drug_strength": ("drug", VOCAB, ("concept",)),
    "person": ("person", PATIENT, ("concept",)),
    "observation_period": ("clinical_event", PATIENT, ("person", "concept")),
    "visit_occurrence": ("clinical_event", PATIENT, ("person", "concept")),
    "visit_detail": ("clinical_event", PATIENT, ("visit_occurrence",)),
    "condition_occurrence": ("clinical_event", PATIENT, ("person", "concept", "visit_occurrence")),
    "drug_exposure": ("clinical_event", PATIENT, ("person", "concept", "visit_occurrence")),
    "procedure_occurrence": ("clinical_event", PATIENT, ("person", "concept", "visit_occurrence")),
    "measurement": ("clinical_event", PATIENT, ("person", "concept", "visit_occurrence")),
    "observation": ("clinical_event", PATIENT, ("person", "concept", "visit_occurrence")),
    "device_exposure": ("clinical_event", PATIENT, ("person", "concept", "visit_occurrence")),
    "death": ("clinical_event", PATIENT, ("person", "concept")),
    "specimen": ("clinical_event", PATIENT, ("person", "concept")),
    "note": ("clinical_event", PATIENT, ("person", "visit_occurrence")),
    "note_nlp": ("clinical_event", PATIENT, ("note",)),
    "fact_relationship": ("clinical_event", PATIENT, ("concept",)),
    "location": ("health_system", PATIENT, ()),
    "care_site": ("health_system", PATIENT, ("location",)),
    "provider": ("health_system", PATIENT, ("care_site",)),
    "payer_plan_period": ("health_economics", PATIENT, ("person",)),
    "cost": ("health_economics", PATIENT, ("payer_plan_period", "concept")),
    "drug_era": ("derived", PATIENT, ("drug_exposure",)),
    "dose_era": ("derived", PATIENT, ("drug_exposure",)),
    "condition_era": ("derived", PATIENT, ("condition_occurrence",)),
    "cohort_definition": ("derived", PATIENT, ("concept",)),
    "attribute_definition": ("derived", PATIENT, ("concept",)),
    "cohort": ("derived", PATIENT, ("cohort_definition", "person")),
    "cohort_attribute": ("derived", PATIENT, ("cohort", "attribute_definition")),
    "cdm_source": ("metadata", PATIENT, ()),
    "metadata": ("metadata", PATIENT, ("concept",)),
}


def source_file_name(table: str, dataset: str) -> str:
    # Athena vocabulary exports use upper-case file names.
    return f"{table.upper()}.csv" if dataset == VOCAB else f"{table}.csv"


def topological_order(dependencies: Mapping[str, Sequence[str]]) -> List[str]:
    """
    Order tables so every table comes after its prerequisites.

    Among tables that are ready at the same time the one declared first wins.
    Raises ``ValueError`` on unknown prerequisites or dependency cycles.
    """
    position = {name: idx for idx, name in enumerate(dependencies)}
    remaining: Dict[str, int] = {}
    dependents: Dict[str, List[str]] = {name: [] for name in dependencies}
    for name, prereqs in dependencies.items():
        unique = set(prereqs)
        for prereq in unique:
            if prereq not in dependencies:
                raise ValueError(f"Table '{name}' depends on undeclared table '{prereq}'")
            if prereq == name:
                raise ValueError(f"Table '{name}' depends on itself")
            dependents[prereq].append(name)
        remaining[name] = len(unique)

    ready = [(position[name], name) for name, count in remaining.items() if count == 0]
    heapq.heapify(ready)
    order: List[str] = []
    while ready:
        _, name = heapq.heappop(ready)
        order.append(name)
        for dependent in dependents[name]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, (position[dependent], dependent))

    if len(order) != len(dependencies):
        stuck = sorted(name for name, count in remaining.items() if count > 0)
        raise ValueError(f"Dependency cycle among tables: {', '.join(stuck)}")
    return order


def table_sources() -> Dict[str, TableSource]:
    return {
        table: TableSource(table=table, tier=tier, dataset=dataset, file_name=source_file_name(table, dataset))
        for table, (tier, dataset, _prereqs) in TABLE_DEPENDENCIES.items()
    }


def load_plan(include_tables: Optional[Iterable[str]] = None) -> List[TableSource]:
    sources = table_sources()
    order = topological_order({table: prereqs for table, (_t, _d, prereqs) in TABLE_DEPENDENCIES.items()})
    if include_tables:
        wanted = {t.strip().lower() for t in include_tables if t and t.strip()}
        unknown = sorted(wanted - set(sources))
        if unknown:
            raise ValueError(f"Unknown table(s) in include list: {', '.join(unknown)}")
        order = [table for table in order if table in wanted]
    return [sources[table] for table in order]
