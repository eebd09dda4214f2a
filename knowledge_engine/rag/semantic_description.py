"""Human-readable descriptions of database semantic models.

Each table model is assigned a semantic role (entity, fact, snapshot, event),
either declared on the model as `semantic_role` or inferred from its
measures, dimensions and name. A role-specific descriptor then renders the
prose, typical business questions and key points for that table.

The generated markdown is stored on the database-level knowledge entry for
display only; it is never embedded or mirrored to the vector store.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

IDENTIFIABLE_HINTS = ("name", "title", "phone", "email", "mobile", "tel", "code", "no", "number")
DIMENSION_TYPE_HINTS = ("date", "time", "enum", "varchar", "char")
DIMENSION_NAME_HINTS = ("type", "status", "category")
MEASURE_TYPE_HINTS = ("int", "decimal", "float", "double", "numeric")
MEASURE_NAME_HINTS = ("amount", "price", "quantity", "count", "total", "sum")
MAX_LISTED_FIELDS = 5


class SemanticRole(str, Enum):
    ENTITY = "entity"
    FACT = "fact"
    SNAPSHOT = "snapshot"
    EVENT = "event"


ROLE_LABELS = {
    SemanticRole.ENTITY: "Entity",
    SemanticRole.FACT: "Fact table",
    SemanticRole.SNAPSHOT: "Snapshot",
    SemanticRole.EVENT: "Event stream",
}


def _any_contains(values: list[str], *hints: str) -> bool:
    return any(hint in value for value in values for hint in hints)


def _first_containing(values: list[str], *hints: str) -> str | None:
    return next((v for v in values if any(h in v for h in hints)), None)


def _code_list(values: list[str], limit: int = 2) -> str:
    return ", ".join(f"`{v}`" for v in values[:limit])


@dataclass
class ModelContext:
    """Structural facts extracted from one table model."""

    primary_key: str | None = None
    foreign_keys: list[str] = field(default_factory=list)
    dimensions: list[str] = field(default_factory=list)
    measures: list[str] = field(default_factory=list)
    identifiable_fields: list[str] = field(default_factory=list)

    @property
    def has_time_dimension(self) -> bool:
        return _any_contains(self.dimensions, "time", "date")


def model_display_name(model: dict[str, Any], default: str) -> str:
    return model.get("name") or model.get("model") or default


def model_table_name(model: dict[str, Any], default: str) -> str:
    return model.get("model") or model.get("table") or model_display_name(model, default)


def _field_name(item: dict[str, Any]) -> str | None:
    return item.get("expr") or item.get("name") or item.get("alias")


def extract_model_context(model: dict[str, Any]) -> ModelContext:
    """Collect keys, dimensions, measures and identifiable fields.

    Declared `entities`, `dimensions` and `measures` win; when a model only
    carries raw `columns`, they are inferred from column types and names.
    """
    entities = model.get("entities") or []
    columns = model.get("columns") or []

    primary = next((e for e in entities if e.get("type") == "primary"), None)
    context = ModelContext(
        primary_key=(primary.get("expr") or primary.get("name")) if primary else None,
        foreign_keys=[
            e.get("expr") or e.get("name") for e in entities if e.get("type") == "foreign"
        ],
        dimensions=[n for n in map(_field_name, model.get("dimensions") or []) if n],
        measures=[n for n in map(_field_name, model.get("measures") or []) if n],
    )

    if columns:
        if not context.dimensions:
            context.dimensions = [
                col["name"]
                for col in columns
                if col.get("name")
                and (
                    any(h in (col.get("type") or "").lower() for h in DIMENSION_TYPE_HINTS)
                    or any(h in col["name"].lower() for h in DIMENSION_NAME_HINTS)
                )
            ]
        if not context.measures:
            context.measures = [
                col["name"]
                for col in columns
                if col.get("name")
                and (
                    any(h in (col.get("type") or "").lower() for h in MEASURE_TYPE_HINTS)
                    or any(h in col["name"].lower() for h in MEASURE_NAME_HINTS)
                )
            ]
        if not context.primary_key:
            context.primary_key = next(
                (
                    col.get("name")
                    for col in columns
                    if "PRI" in (col.get("key") or "").upper()
                ),
                None,
            )

    context.identifiable_fields = [
        col["name"]
        for col in columns
        if col.get("name") and any(h in col["name"].lower() for h in IDENTIFIABLE_HINTS)
    ]
    return context


def infer_semantic_role(model: dict[str, Any], context: ModelContext) -> SemanticRole:
    """Declared `semantic_role` wins, otherwise guess from structure."""
    declared = model.get("semantic_role")
    if declared in {role.value for role in SemanticRole}:
        return SemanticRole(declared)

    name = model_display_name(model, "").lower()

    if _any_contains(context.measures, "amount", "price", "quantity", "total"):
        if (
            _any_contains(context.measures, "stock", "balance", "quantity")
            and context.has_time_dimension
        ):
            return SemanticRole.SNAPSHOT
        return SemanticRole.FACT

    if _any_contains(context.dimensions, "type", "action", "event") or any(
        hint in name for hint in ("behavior", "log", "event")
    ):
        return SemanticRole.EVENT

    if _any_contains(context.dimensions, "status", "state") or any(
        hint in name for hint in ("inventory", "stock", "snapshot")
    ):
        return SemanticRole.SNAPSHOT

    return SemanticRole.ENTITY


class SemanticDescriptor(ABC):
    """Renders role-specific prose for one table model."""

    default_name = "table"

    @abstractmethod
    def describe(self, model: dict[str, Any], context: ModelContext) -> str:
        """Prose summary of the table."""

    def business_questions(self, model: dict[str, Any], context: ModelContext) -> list[str]:
        return []

    def key_points(self, model: dict[str, Any], context: ModelContext) -> list[str]:
        return []


class EntityDescriptor(SemanticDescriptor):
    default_name = "entity"

    def describe(self, model, context):
        name = model_display_name(model, self.default_name)
        table = model_table_name(model, self.default_name)
        desc = f"`{table}` is an **entity table** holding core business objects.\n\n"

        has_name = _any_contains(context.identifiable_fields, "name", "title")
        has_contact = _any_contains(context.identifiable_fields, "phone", "email")
        if has_name and has_contact:
            desc += (
                "It usually stores **customers, users or contacts**, "
                "with names and contact details."
            )
        elif has_name:
            desc += "It stores basic attributes of each entity such as names and identifiers."
        else:
            desc += f'It stores entities related to "{name}".'

        if context.primary_key:
            desc += f" Each entity is identified by `{context.primary_key}`."
        if context.dimensions:
            desc += f"\n\nRows can be grouped and filtered by {_code_list(context.dimensions)}."
        return desc

    def business_questions(self, model, context):
        name = model_display_name(model, self.default_name)
        questions = []
        if _any_contains(context.identifiable_fields, "name"):
            questions.append(f"Look up basic information about {name}")
            questions.append(f"Search {name} by name")
        if context.dimensions:
            questions.append(f"Count {name} by {context.dimensions[0]}")
        if context.measures:
            questions.append(f"Summarize {context.measures[0]} across {name}")
        else:
            questions.append(f"Count the total number of {name}")
        return questions

    def key_points(self, model, context):
        points = []
        if context.primary_key:
            points.append(f"`{context.primary_key}` is the primary key and identifies each row")
        if context.identifiable_fields:
            points.append(
                f"{_code_list(context.identifiable_fields)} identify an entity directly"
            )
        if context.dimensions:
            points.append(f"Supports grouping by {_code_list(context.dimensions)}")
        return points


class FactDescriptor(SemanticDescriptor):
    default_name = "fact table"

    def describe(self, model, context):
        name = model_display_name(model, self.default_name)
        table = model_table_name(model, self.default_name)
        desc = (
            f"`{table}` is a **fact table** recording aggregatable business facts "
            "such as transactions and orders.\n\n"
        )

        has_amount = _any_contains(context.measures, "amount", "total", "price")
        has_quantity = _any_contains(context.measures, "quantity", "count", "num")
        if has_amount and has_quantity:
            desc += (
                "It carries **amount and quantity** measures and is a primary source "
                "for revenue, sales volume and order count metrics."
            )
        elif has_amount:
            desc += "It carries **amount** measures used for financial and transaction analysis."
        elif has_quantity:
            desc += "It carries **quantity** measures used for counting and statistics."
        else:
            desc += f'It records business facts related to "{name}".'

        if context.primary_key:
            desc += f"\n\nEach record is identified by `{context.primary_key}`."
        if context.dimensions:
            desc += f" Aggregate by {_code_list(context.dimensions)}."
        return desc

    def business_questions(self, model, context):
        name = model_display_name(model, self.default_name)
        questions = []
        if _any_contains(context.measures, "amount", "total", "price"):
            questions.append(f"What is the total amount of {name}?")
            questions.append(f"How does the amount of {name} trend over time?")
        if _any_contains(context.measures, "quantity", "count"):
            questions.append(f"What is the total quantity of {name}?")
            questions.append(f"How is the quantity of {name} distributed?")
        if context.dimensions:
            questions.append(f"Summarize {name} by {context.dimensions[0]}")
        return questions or [f"Show statistics for {name}"]

    def key_points(self, model, context):
        points = []
        if context.primary_key:
            points.append(f"`{context.primary_key}` is the primary key of each fact record")
        if context.measures:
            points.append(
                f"{_code_list(context.measures)} are measures for SUM, AVG and COUNT"
            )
            points.append(f"Aggregate {_code_list(context.measures)} across dimensions")
        if context.dimensions:
            points.append(f"Group with GROUP BY on {_code_list(context.dimensions)}")
        dual = [d for d in context.dimensions if d in context.measures]
        if dual:
            points.append(f"`{dual[0]}` works both as a dimension and as a measure")
        return points


class SnapshotDescriptor(SemanticDescriptor):
    default_name = "snapshot"

    def describe(self, model, context):
        name = model_display_name(model, self.default_name)
        table = model_table_name(model, self.default_name)
        desc = (
            f"`{table}` is a **snapshot table** recording state at a point in time "
            "rather than transaction events.\n\n"
        )

        if _any_contains(context.measures, "quantity", "stock", "inventory"):
            desc += (
                "It tracks **inventory or balance** style state. Unlike a fact table "
                "it records the current state, not what happened."
            )
        elif _any_contains(context.measures, "balance", "amount"):
            desc += "It tracks **balances and accounts**."
        elif _any_contains(context.dimensions, "status", "state"):
            desc += "It tracks the **status** of entities."
        else:
            desc += f'It holds state snapshots related to "{name}".'

        if context.primary_key:
            desc += f"\n\nEach record is identified by `{context.primary_key}`."
        if context.has_time_dimension:
            desc += " State changes can be analyzed over time."
        return desc

    def business_questions(self, model, context):
        name = model_display_name(model, self.default_name)
        if _any_contains(context.measures, "quantity", "stock", "inventory"):
            questions = [
                f"Which {name} records are low on stock?",
                f"What is the total stock in {name}?",
                f"How does stock in {name} change over time?",
            ]
        elif _any_contains(context.measures, "balance"):
            questions = [f"What are the balances in {name}?", f"How are balances distributed in {name}?"]
        else:
            questions = [
                f"What is the current status distribution of {name}?",
                f"How does the status of {name} change?",
            ]
        if context.has_time_dimension:
            questions.append(f"Analyze state changes of {name} by time")
        return questions

    def key_points(self, model, context):
        points = []
        if context.primary_key:
            points.append(f"`{context.primary_key}` is the primary key of each snapshot")
        state = _first_containing(context.measures, "quantity", "stock", "balance", "inventory")
        if state:
            points.append(f"`{state}` can be filtered on and summed")
        if context.has_time_dimension:
            points.append("Supports trend analysis along the time dimension")
        points.append("Snapshots record current state, fact tables record events that happened")
        return points


class EventDescriptor(SemanticDescriptor):
    default_name = "event stream"

    def describe(self, model, context):
        name = model_display_name(model, self.default_name)
        table = model_table_name(model, self.default_name)
        desc = (
            f"`{table}` is an **event table** recording actions, operations and logs.\n\n"
        )

        has_type = _any_contains(context.dimensions, "type", "action", "event")
        if has_type and context.has_time_dimension:
            desc += (
                "It records **event type, time and related objects**, the basis for "
                "behavior paths, conversion funnels and recommendations."
            )
        elif has_type:
            desc += "It records events of different types for behavior analysis."
        else:
            desc += f'It records business events related to "{name}".'

        if context.primary_key:
            desc += f"\n\nEach event is identified by `{context.primary_key}`."
        desc += " Events are discrete and usually not aggregated like facts."
        return desc

    def business_questions(self, model, context):
        name = model_display_name(model, self.default_name)
        questions = []
        if _any_contains(context.dimensions, "type", "action"):
            questions.append(f"How are event types distributed in {name}?")
            questions.append(f"How does the event volume of {name} trend?")
        if context.has_time_dimension:
            questions.append(f"Analyze {name} events by time")
        questions.append(f"Find specific event records in {name}")
        questions.append(f"Trace conversion paths in {name}")
        return questions

    def key_points(self, model, context):
        points = []
        if context.primary_key:
            points.append(f"`{context.primary_key}` is the primary key of each event")
        event_type = _first_containing(context.dimensions, "type", "action")
        if event_type:
            points.append(f"`{event_type}` classifies events")
        time_field = _first_containing(context.dimensions, "time", "date")
        if time_field:
            points.append(f"`{time_field}` records when the event happened")
        points.append("Used for behavior paths, funnels and recommendations")
        points.append("Events are discrete; amounts and quantities are not summed")
        return points


DESCRIPTORS: dict[SemanticRole, SemanticDescriptor] = {
    SemanticRole.ENTITY: EntityDescriptor(),
    SemanticRole.FACT: FactDescriptor(),
    SemanticRole.SNAPSHOT: SnapshotDescriptor(),
    SemanticRole.EVENT: EventDescriptor(),
}


def _bullets(values: list[str]) -> str:
    return "".join(f"- `{v}`\n" for v in values[:MAX_LISTED_FIELDS])


def _numbered(values: list[str]) -> str:
    return "".join(f"{i}. {v}\n" for i, v in enumerate(values, 1))


def describe_model(index: int, model: dict[str, Any]) -> str:
    """Markdown section for one table model."""
    name = model_display_name(model, "unknown")
    table = model_table_name(model, "unknown")
    context = extract_model_context(model)
    role = infer_semantic_role(model, context)
    descriptor = DESCRIPTORS[role]

    # Short declared descriptions are replaced with the generated one
    summary = model.get("description") or ""
    if len(summary) < 20:
        summary = descriptor.describe(model, context)

    section = f"## {index}. {name}\n\n"
    section += f"**Table**: `{table}`\n\n"
    section += f"**Semantic role**: {ROLE_LABELS[role]} ({role.value})\n\n"
    section += f"### Summary\n\n{summary}\n\n"

    keys = []
    if context.primary_key:
        label = context.primary_key.removesuffix("_id")
        keys.append(f"- **Identifier**: `{context.primary_key}` ({label})")
    keys.extend(f"- **Foreign key**: `{fk}`" for fk in context.foreign_keys[:3])
    if keys:
        section += "### Keys\n\n" + "\n".join(keys) + "\n\n"

    if context.identifiable_fields:
        section += "### Identifying fields\n\n" + _bullets(context.identifiable_fields) + "\n"
    if context.dimensions:
        section += "### Dimensions\n\n" + _bullets(context.dimensions) + "\n"
    if context.measures:
        section += "### Measures\n\n" + _bullets(context.measures) + "\n"

    questions = descriptor.business_questions(model, context)
    if questions:
        section += "### Typical questions\n\n" + _numbered(questions) + "\n"

    points = descriptor.key_points(model, context)
    if points:
        section += "### Key points\n\n" + _numbered(points) + "\n"

    return section + "---\n\n"


def generate_semantic_model_description(
    database_name: str | None,
    semantic_models: list[dict[str, Any]],
) -> str:
    """Markdown overview of a database and each of its table models.

    Args:
        database_name: Database the models belong to
        semantic_models: Table-level semantic model dicts

    Returns:
        Markdown text, empty when there are no models
    """
    if not semantic_models:
        return ""

    description = ""
    if database_name:
        description += f"# Database: {database_name}\n\n"
        description += (
            f"This database has {len(semantic_models)} semantic models "
            "for business analysis and querying.\n\n---\n\n"
        )

    for index, model in enumerate(semantic_models, 1):
        description += describe_model(index, model)
    return description
