"""Pydantic models for the push protocol and the DHCPTemplate resource.

These models provide:
1. Type-safe parsing of push requests and cluster objects
2. Validation at the boundary (fail fast, fail loudly)
3. Stable JSON shapes for the wire and for persisted status
"""

from __future__ import annotations

import secrets
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
    model_validator,
)

# =============================================================================
# Push Protocol
# =============================================================================

TOKEN_BITS = 64


def new_token() -> int:
    """Draw a fresh random token for a full push."""
    return secrets.randbits(TOKEN_BITS)


class Scope(str, Enum):
    """Granularity of a push."""

    SHALLOW = "SHALLOW"
    FULL = "FULL"


class Prefix6(BaseModel):
    """Delegated IPv6 prefix."""

    model_config = {"extra": "ignore"}

    ip: Annotated[str, Field(min_length=1)]
    len: Annotated[int, Field(ge=0, le=128)]


class Lease4(BaseModel):
    """DHCPv4 lease details relevant for templating."""

    model_config = {"extra": "ignore"}

    dns: list[str] = Field(default_factory=list)
    domain: str | None = None


class Lease6(BaseModel):
    """DHCPv6 lease details relevant for templating."""

    model_config = {"extra": "ignore"}

    dns: list[str] = Field(default_factory=list)
    prefixes: list[Prefix6] = Field(default_factory=list)


class Interface(BaseModel):
    """A network interface and its leases."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1)]
    lease4: Lease4 | None = None
    lease6: Lease6 | None = None


class Node(BaseModel):
    """Complete network state of a single node."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1)]
    interfaces: list[Interface] = Field(default_factory=list)


class Shallow(BaseModel):
    """Identity-only payload used to probe token freshness."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1)]


class Update(BaseModel):
    """A push from an agent: a token plus either a full node or a shallow probe."""

    model_config = {"extra": "ignore"}

    token: Annotated[int, Field(ge=0, lt=2**TOKEN_BITS)]
    full: Node | None = None
    shallow: Shallow | None = None

    @model_validator(mode="after")
    def validate_payload(self) -> Update:
        if (self.full is None) == (self.shallow is None):
            raise ValueError("exactly one of 'full' or 'shallow' must be set")
        return self

    @property
    def name(self) -> str:
        """Node name carried by either payload variant."""
        if self.full is not None:
            return self.full.name
        assert self.shallow is not None
        return self.shallow.name

    @property
    def scope(self) -> Scope:
        return Scope.FULL if self.full is not None else Scope.SHALLOW

    def shallow_copy(self) -> Update:
        """Same token and node name, without any interface data."""
        return Update(token=self.token, shallow=Shallow(name=self.name))


class Refresh(BaseModel):
    """Directive returned by the authority after every push."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    backoff_seconds: Annotated[int, Field(ge=0, alias="backoffSeconds")] = 0
    scope: Scope = Scope.FULL


# =============================================================================
# Object References
# =============================================================================


class ObjectRefError(Exception):
    """Raised when an object cannot be referenced."""

    pass


class MissingTypesError(ObjectRefError):
    """Raised when an object has no apiVersion or kind."""

    pass


class MissingNameError(ObjectRefError):
    """Raised when an object has no metadata.name."""

    pass


class InvalidIdentityError(ObjectRefError):
    """Raised when metadata or an identity field has the wrong type."""

    pass


class ObjectRef(BaseModel):
    """Type, namespace and name of a generically managed object.

    Ordered by (apiVersion, kind, namespace, name). An absent namespace
    sorts before any present one.
    """

    model_config = {"extra": "ignore", "populate_by_name": True, "frozen": True}

    api_version: str = Field(alias="apiVersion")
    kind: str
    namespace: str | None = None
    name: str

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ObjectRef:
        """Derive the reference of a rendered or fetched object.

        Raises:
            MissingTypesError: If apiVersion or kind is missing.
            MissingNameError: If metadata.name is missing.
            InvalidIdentityError: If metadata is not a mapping or an identity
                field is not a string.
        """
        api_version = obj.get("apiVersion")
        kind = obj.get("kind")
        if not api_version or not kind:
            raise MissingTypesError("Cannot reference object: Missing types.")

        metadata = obj.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise InvalidIdentityError(
                f"Cannot reference object: metadata is a {type(metadata).__name__}, "
                "not a mapping."
            )

        name = metadata.get("name")
        if not name:
            raise MissingNameError("Cannot reference object: Missing name.")

        namespace = metadata.get("namespace") or None
        fields = {"apiVersion": api_version, "kind": kind, "name": name, "namespace": namespace}
        for key, value in fields.items():
            if value is not None and not isinstance(value, str):
                raise InvalidIdentityError(
                    f"Cannot reference object: {key} must be a string, "
                    f"not {type(value).__name__}."
                )

        try:
            return cls(api_version=api_version, kind=kind, namespace=namespace, name=name)
        except ValidationError as e:
            raise InvalidIdentityError(f"Cannot reference object: {e}") from e

    def sort_key(self) -> tuple[str, str, bool, str, str]:
        return (
            self.api_version,
            self.kind,
            self.namespace is not None,
            self.namespace or "",
            self.name,
        )

    def to_dict(self) -> dict[str, str]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ObjectRef):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def __le__(self, other: object) -> bool:
        if not isinstance(other, ObjectRef):
            return NotImplemented
        return self.sort_key() <= other.sort_key()

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, ObjectRef):
            return NotImplemented
        return self.sort_key() > other.sort_key()

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, ObjectRef):
            return NotImplemented
        return self.sort_key() >= other.sort_key()

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.api_version}/{self.kind} {self.namespace}/{self.name}"
        return f"{self.api_version}/{self.kind} {self.name}"


# =============================================================================
# DHCPTemplate Resource
# =============================================================================

TEMPLATE_GROUP = "k8s.lukasdietrich.com"
TEMPLATE_VERSION = "v1alpha1"
TEMPLATE_API_VERSION = f"{TEMPLATE_GROUP}/{TEMPLATE_VERSION}"
TEMPLATE_KIND = "DHCPTemplate"
TEMPLATE_PLURAL = "dhcptemplates"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionType(str, Enum):
    PENDING = "Pending"
    READY = "Ready"
    ERROR = "Error"
    UNKNOWN = "Unknown"


class Reason(str, Enum):
    RECONCILIATION = "Reconciliation"
    TEMPLATE_EVALUATION = "TemplateEvaluation"
    PLANNING_OBJECTS = "PlanningObjects"
    ALL_OBJECTS_READY = "AllObjectsReady"
    UNKNOWN = "Unknown"


def _lenient_enum(enum_cls: type[Enum], value: Any) -> Any:
    # Values written by newer controllers must not break parsing.
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return enum_cls("Unknown")


def utc_now() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


class Condition(BaseModel):
    """A typed, timestamped status fact attached to a DHCPTemplate."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    last_transition_time: datetime = Field(default_factory=utc_now, alias="lastTransitionTime")
    observed_generation: int | None = Field(None, alias="observedGeneration")
    status: ConditionStatus = ConditionStatus.TRUE
    type: ConditionType
    reason: Reason
    message: str = ""

    @field_validator("status", mode="before")
    @classmethod
    def parse_status(cls, v: Any) -> Any:
        return _lenient_enum(ConditionStatus, v)

    @field_validator("type", mode="before")
    @classmethod
    def parse_type(cls, v: Any) -> Any:
        return _lenient_enum(ConditionType, v)

    @field_validator("reason", mode="before")
    @classmethod
    def parse_reason(cls, v: Any) -> Any:
        return _lenient_enum(Reason, v)

    @field_serializer("last_transition_time")
    def serialize_time(self, value: datetime) -> str:
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")

    @classmethod
    def new(
        cls,
        template: DHCPTemplate,
        reason: Reason,
        type_: ConditionType,
        message: str,
    ) -> Condition:
        return cls(
            last_transition_time=utc_now(),
            observed_generation=template.metadata.generation,
            status=ConditionStatus.TRUE,
            type=type_,
            reason=reason,
            message=message,
        )


class TemplateStatus(BaseModel):
    """Status subresource of a DHCPTemplate."""

    model_config = {"extra": "ignore"}

    objects: set[ObjectRef] = Field(default_factory=set)
    conditions: list[Condition] = Field(default_factory=list)

    @field_serializer("objects")
    def serialize_objects(self, objects: set[ObjectRef]) -> list[dict[str, str]]:
        return [ref.to_dict() for ref in sorted(objects)]

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ObjectMeta(BaseModel):
    """The subset of object metadata the controller relies on."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str | None = None
    uid: str | None = None
    generation: int | None = None
    resource_version: str | None = Field(None, alias="resourceVersion")
    labels: dict[str, str] = Field(default_factory=dict)


class DHCPTemplateSpec(BaseModel):
    model_config = {"extra": "ignore"}

    template: str


class DHCPTemplate(BaseModel):
    """Cluster-scoped resource holding a manifest template."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(TEMPLATE_API_VERSION, alias="apiVersion")
    kind: str = TEMPLATE_KIND
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: DHCPTemplateSpec
    status: TemplateStatus | None = None

    @property
    def name(self) -> str | None:
        return self.metadata.name

    def previous_objects(self) -> set[ObjectRef] | None:
        """Objects recorded by the last pass, if any status was written."""
        if self.status is None:
            return None
        return set(self.status.objects)
