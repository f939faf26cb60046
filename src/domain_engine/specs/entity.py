"""
Entity specification types.

Defines entities, fields, relationships, junction tables and per-entity
endpoint toggles. Pure data: no storage or request logic lives here.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# =============================================================================
# Field Type System
# =============================================================================


class ScalarType(StrEnum):
    """Scalar field types."""

    STR = "str"
    TEXT = "text"
    INT = "int"
    BIGINT = "bigint"
    DECIMAL = "decimal"
    BOOL = "bool"
    DATE = "date"
    DATETIME = "datetime"
    UUID = "uuid"
    EMAIL = "email"
    URL = "url"
    JSON = "json"


class SpatialType(StrEnum):
    """Spatial column types. Values are opaque to the engine (WKT or GeoJSON text)."""

    POINT = "point"
    LINESTRING = "linestring"
    POLYGON = "polygon"
    MULTIPOINT = "multipoint"
    MULTILINESTRING = "multilinestring"
    MULTIPOLYGON = "multipolygon"
    GEOMETRY = "geometry"
    GEOGRAPHY = "geography"


class FieldType(BaseModel):
    """
    Column type of a field.

    Examples:
        - name: FieldType(kind="scalar", scalar_type=ScalarType.STR, max_length=200)
        - status: FieldType(kind="enum", enum_values=["active", "archived"])
        - ref: FieldType(kind="ref", ref_entity="Department")
        - point: FieldType(kind="spatial", spatial_type=SpatialType.POINT, srid=4326)
    """

    kind: Literal["scalar", "enum", "ref", "spatial"] = Field(
        description="Type category: scalar, enum, ref or spatial"
    )
    scalar_type: ScalarType | None = Field(
        default=None, description="Scalar kind (kind=scalar only)"
    )
    max_length: int | None = Field(default=None, description="Longest accepted string")
    precision: int | None = Field(default=None, description="Total digits of a decimal")
    scale: int | None = Field(default=None, description="Fractional digits of a decimal")
    enum_values: list[str] | None = Field(default=None, description="Accepted enum members")
    ref_entity: str | None = Field(default=None, description="Entity a ref column points at")
    spatial_type: SpatialType | None = Field(
        default=None, description="Geometry kind (for kind=spatial)"
    )
    srid: int | None = Field(default=None, description="Spatial reference id")

    model_config = ConfigDict(frozen=True)

    @field_validator("enum_values")
    @classmethod
    def validate_enum_values(cls, v: list[str] | None) -> list[str] | None:
        for member in v or ():
            if not member.replace("_", "").replace("-", "").isalnum():
                raise ValueError(f"Enum member {member!r} may only use letters, digits, _ and -")
        return v

    @property
    def is_orderable(self) -> bool:
        """Spatial and JSON values only support equality style comparisons."""
        if self.kind == "spatial":
            return False
        return not (self.kind == "scalar" and self.scalar_type == ScalarType.JSON)


# =============================================================================
# Fields
# =============================================================================


class FieldSpec(BaseModel):
    """
    One column of an entity.

    Attributes:
        name: Field identifier (also the column name)
        type: Field type specification
        required: NOT NULL on storage and required on create
        exposed: Whether the field may leave the domain boundary or be filtered on
        unique: Whether values must be unique
        indexed: Whether to create a database index
        default: Default value applied on create
    """

    name: str = Field(description="Field name")
    label: str | None = Field(default=None, description="Human-readable label")
    type: FieldType = Field(description="Field type specification")
    required: bool = Field(default=False, description="NOT NULL and required on create")
    default: Any | None = Field(default=None, description="Value used when create omits the field")
    indexed: bool = Field(default=False, description="Add a secondary index")
    unique: bool = Field(default=False, description="Add a UNIQUE constraint")
    exposed: bool = Field(default=True, description="Visible in responses and filters?")

    model_config = ConfigDict(frozen=True)

    @property
    def filterable(self) -> bool:
        """Only exposed fields can be used as filter or ordering targets."""
        return self.exposed

    @property
    def display_name(self) -> str:
        """Human-readable name used in error messages."""
        if self.label:
            return self.label
        words: list[str] = []
        current = ""
        for ch in self.name.replace("_", " "):
            if ch.isupper() and current and not current.endswith(" "):
                words.append(current)
                current = ch.lower()
            else:
                current += ch
        words.append(current)
        return " ".join(w.strip() for w in words if w.strip())


# =============================================================================
# Relationships
# =============================================================================


class RelationKind(StrEnum):
    """Types of relationships between entities."""

    ONE_TO_ONE = "one_to_one"
    ONE_TO_MANY = "one_to_many"
    MANY_TO_ONE = "many_to_one"
    MANY_TO_MANY = "many_to_many"
    SELF_MANY_TO_MANY = "self_many_to_many"


class OnDeleteAction(StrEnum):
    """Actions when a referenced entity is deleted."""

    RESTRICT = "restrict"
    CASCADE = "cascade"
    SET_NULL = "set_null"
    NO_ACTION = "no_action"


class JunctionSpec(BaseModel):
    """
    Junction table backing a many-to-many relation.

    ``source_key`` points at the owning entity, ``target_key`` at the far side.
    Two relations may share one junction table with the keys swapped, which is
    how self-referential directions (mentors / mentees) are declared.
    A symmetric junction stores each unordered pair once.
    """

    table: str = Field(description="Junction table name")
    source_key: str = Field(description="Column referencing the owner entity")
    target_key: str = Field(description="Column referencing the related entity")
    symmetric: bool = Field(default=False, description="Edges are unordered pairs")

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _distinct_keys(self) -> "JunctionSpec":
        if self.source_key == self.target_key:
            raise ValueError(f"Junction '{self.table}' needs two distinct key columns")
        return self


class RelationEndpointConfig(BaseModel):
    """Which junction sub-resource endpoints are served."""

    get: bool = True
    add: bool = True
    remove: bool = True
    replace: bool = True

    model_config = ConfigDict(frozen=True)


class RelationSpec(BaseModel):
    """
    Relationship specification.

    Examples:
        - manager: RelationSpec(name="department", to_entity="Department",
                                kind="many_to_one", foreign_key="departmentId")
        - children: RelationSpec(name="employees", to_entity="Employee",
                                 kind="one_to_many", foreign_key="departmentId")
        - mentors: RelationSpec(name="mentors", to_entity="Employee",
                                kind="self_many_to_many",
                                junction=JunctionSpec(table="mentorship",
                                                      source_key="menteeId",
                                                      target_key="mentorId"))
    """

    name: str = Field(description="Relation name")
    to_entity: str = Field(description="Target entity")
    kind: RelationKind = Field(description="Relationship type")
    foreign_key: str | None = Field(
        default=None,
        description="FK column (on this entity for many_to_one, on the target for one_to_many)",
    )
    junction: JunctionSpec | None = Field(default=None, description="Junction for many-to-many")
    on_delete: OnDeleteAction = Field(
        default=OnDeleteAction.RESTRICT, description="Behavior when the referenced row is deleted"
    )
    endpoints: RelationEndpointConfig = Field(default_factory=RelationEndpointConfig)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_shape(self) -> "RelationSpec":
        if self.is_many_to_many and self.junction is None:
            raise ValueError(f"Relation '{self.name}' ({self.kind}) requires a junction")
        if not self.is_many_to_many and self.junction is not None:
            raise ValueError(f"Relation '{self.name}' ({self.kind}) cannot declare a junction")
        return self

    @property
    def is_many_to_many(self) -> bool:
        return self.kind in (RelationKind.MANY_TO_MANY, RelationKind.SELF_MANY_TO_MANY)


# =============================================================================
# Entities
# =============================================================================


class EndpointConfig(BaseModel):
    """Which CRUD endpoints are served for an entity."""

    create: bool = True
    read_one: bool = True
    read_many: bool = True
    update: bool = True
    delete: bool = True

    model_config = ConfigDict(frozen=True)


class TimestampSpec(BaseModel):
    """Audit and soft-delete column names."""

    created: str = "createdAt"
    updated: str = "updatedAt"
    deleted: str = "deletedAt"

    model_config = ConfigDict(frozen=True)


_UUID_TYPE = FieldType(kind="scalar", scalar_type=ScalarType.UUID)
_DATETIME_TYPE = FieldType(kind="scalar", scalar_type=ScalarType.DATETIME)


class EntitySpec(BaseModel):
    """
    Entity specification.

    The primary key, audit timestamps and the soft-delete marker are added
    automatically unless the entity declares them explicitly. Explicit
    declarations win, so ``FieldSpec(name="createdAt", ..., exposed=False)``
    hides the audit column.
    """

    name: str = Field(description="Entity name")
    table_name: str | None = Field(default=None, description="Storage table name")
    label: str | None = Field(default=None, description="Human-readable label")
    plural: str | None = Field(default=None, description="REST collection path segment")
    description: str | None = Field(default=None, description="Entity description")
    fields: list[FieldSpec] = Field(default_factory=list, description="Entity fields")
    relations: list[RelationSpec] = Field(default_factory=list, description="Entity relationships")
    primary_key: str = Field(default="id", description="Primary key field")
    timestamps: bool = Field(default=True, description="Maintain created/updated audit fields")
    soft_delete: bool = Field(default=False, description="Mark rows deleted instead of removing")
    timestamp_names: TimestampSpec = Field(default_factory=TimestampSpec)
    endpoints: EndpointConfig = Field(default_factory=EndpointConfig)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _add_implicit_fields(self) -> "EntitySpec":
        declared = {f.name for f in self.fields}
        if len(declared) != len(self.fields):
            raise ValueError(f"Entity '{self.name}' declares a field twice")

        implicit: list[FieldSpec] = []
        if self.primary_key not in declared:
            implicit.append(FieldSpec(name=self.primary_key, type=_UUID_TYPE, required=True))
        fields = implicit + list(self.fields)

        names = self.timestamp_names
        if self.timestamps:
            for column in (names.created, names.updated):
                if column not in declared:
                    fields.append(FieldSpec(name=column, type=_DATETIME_TYPE, required=True))
        if self.soft_delete and names.deleted not in declared:
            fields.append(FieldSpec(name=names.deleted, type=_DATETIME_TYPE))

        # frozen model: bypass __setattr__
        object.__setattr__(self, "fields", fields)

        rel_names = [r.name for r in self.relations]
        if len(set(rel_names)) != len(rel_names):
            raise ValueError(f"Entity '{self.name}' declares a relation twice")
        clash = set(rel_names) & {f.name for f in fields}
        if clash:
            raise ValueError(
                f"Entity '{self.name}' uses {sorted(clash)} as both field and relation names"
            )
        return self

    @property
    def table(self) -> str:
        return self.table_name or self.name

    def get_field(self, name: str) -> FieldSpec | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def get_relation(self, name: str) -> RelationSpec | None:
        for r in self.relations:
            if r.name == name:
                return r
        return None

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    @property
    def exposed_field_names(self) -> frozenset[str]:
        return frozenset(f.name for f in self.fields if f.exposed)

    @property
    def managed_fields(self) -> frozenset[str]:
        """Fields maintained by the engine rather than supplied by callers."""
        managed: set[str] = set()
        if self.timestamps:
            managed.update((self.timestamp_names.created, self.timestamp_names.updated))
        if self.soft_delete:
            managed.add(self.timestamp_names.deleted)
        return frozenset(managed)

    @property
    def deleted_field(self) -> str | None:
        return self.timestamp_names.deleted if self.soft_delete else None
