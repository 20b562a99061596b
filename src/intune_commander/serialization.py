"""
Polymorphic (de)serialization for cached collections.

Items are written with their runtime type, so a ``Windows10CompliancePolicy``
stored in a list declared as ``DeviceCompliancePolicy`` keeps its
Windows-specific fields. On the way back in, each element's type
discriminator is matched against an explicit registry of subtypes.

Example:
    registry = TypeRegistry()

    @registry.subtype_of(DeviceCompliancePolicy)
    class Windows10CompliancePolicy(DeviceCompliancePolicy): ...

    payload = registry.dumps(policies)
    policies = registry.loads(payload, DeviceCompliancePolicy)
"""

import json
import threading
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

logger = structlog.get_logger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=type[BaseModel])

# Checked in order; the first key present wins even if its value is empty.
DISCRIMINATOR_KEYS = ("odataType", "OdataType", "@odata.type", "odata_type")

DEFAULT_NAMESPACE = "microsoft.graph"


def _lower_first(name: str) -> str:
    return name[:1].lower() + name[1:]


class TypeRegistry:
    """
    Explicit mapping from discriminator names to concrete model classes.

    Resolution of a (discriminator, base type) pair depends only on what
    has been registered, so results are memoized until the next
    registration. The memo is safe to share between worker threads.
    """

    def __init__(self, namespace: str = DEFAULT_NAMESPACE):
        self.namespace = namespace
        self._by_name: dict[str, list[type[BaseModel]]] = {}
        self._names: dict[type[BaseModel], str] = {}
        self._resolved: dict[tuple[str, type], type[BaseModel] | None] = {}
        self._lock = threading.Lock()

    def register(
        self,
        base: type[BaseModel],
        *subtypes: type[BaseModel],
        name: str | None = None,
    ) -> None:
        """
        Register concrete subtypes of ``base``.

        Args:
            base: Declared element type the subtypes may stand in for
            subtypes: Concrete classes (must subclass ``base``)
            name: Explicit discriminator name (only with a single subtype);
                defaults to the class name with a lowercase first letter
        """
        if name is not None and len(subtypes) != 1:
            raise ValueError("An explicit name can only be given for one subtype")

        for subtype in subtypes:
            if not issubclass(subtype, base):
                raise TypeError(f"{subtype.__name__} is not a subclass of {base.__name__}")

            type_name = name or _lower_first(subtype.__name__)
            with self._lock:
                bucket = self._by_name.setdefault(type_name.lower(), [])
                if subtype not in bucket:
                    bucket.append(subtype)
                self._names[subtype] = type_name
                self._resolved.clear()

    def subtype_of(self, base: type[BaseModel], name: str | None = None) -> Callable[[M], M]:
        """Class decorator form of :meth:`register`."""
        def decorator(cls: M) -> M:
            self.register(base, cls, name=name)
            return cls
        return decorator

    def discriminator_for(self, cls: type) -> str | None:
        """Full discriminator value for a registered class, e.g. ``#microsoft.graph.webApp``."""
        type_name = self._names.get(cls)
        if type_name is None:
            return None
        return f"#{self.namespace}.{type_name}" if self.namespace else type_name

    def resolve(self, discriminator: str, base: type) -> type[BaseModel] | None:
        """
        Find the registered subtype of ``base`` named by ``discriminator``.

        Only the last dot-separated segment is compared, case-insensitively:
        ``#microsoft.graph.windows10CompliancePolicy`` matches the class
        registered as ``windows10CompliancePolicy``.
        """
        key = (discriminator, base)
        with self._lock:
            if key in self._resolved:
                return self._resolved[key]

            type_name = discriminator.rsplit(".", 1)[-1].lstrip("#").lower()
            match = None
            if type_name:
                for candidate in self._by_name.get(type_name, []):
                    if issubclass(candidate, base):
                        match = candidate
                        break

            self._resolved[key] = match
            return match

    # -------------------------------------------------------------------------
    # Elements
    # -------------------------------------------------------------------------

    def encode(self, item: Any) -> Any:
        """Convert one item to JSON-ready data using its runtime type."""
        if not isinstance(item, BaseModel):
            return item

        data = item.model_dump(mode="json", by_alias=True)
        if not any(data.get(k) for k in DISCRIMINATOR_KEYS):
            discriminator = self.discriminator_for(type(item))
            if discriminator:
                data["@odata.type"] = discriminator
        return data

    def decode(self, element: Any, base: type[T]) -> T:
        """
        Decode one element as ``base`` or its registered subtype.

        A subtype that fails validation falls back to the base type; a
        base-type failure propagates as ``ValidationError``.
        """
        if not (isinstance(base, type) and issubclass(base, BaseModel)):
            return element
        if not isinstance(element, dict):
            return base.model_validate(element)

        target: type[BaseModel] = base
        for key in DISCRIMINATOR_KEYS:
            value = element.get(key)
            if isinstance(value, str):
                if value:
                    target = self.resolve(value, base) or base
                break

        if target is not base:
            try:
                return target.model_validate(element)
            except ValidationError as e:
                logger.debug(
                    "Subtype decode failed, using base type",
                    subtype=target.__name__,
                    base=base.__name__,
                    error=str(e),
                )
        return base.model_validate(element)

    def decode_many(self, elements: Iterable[Any], base: type[T]) -> list[T]:
        """Decode a sequence of elements, skipping nulls."""
        return [self.decode(e, base) for e in elements if e is not None]

    # -------------------------------------------------------------------------
    # Payloads
    # -------------------------------------------------------------------------

    def dumps(self, items: Iterable[Any]) -> bytes:
        """Serialize a collection to a UTF-8 JSON array."""
        encoded = [self.encode(item) for item in items]
        return json.dumps(encoded, separators=(",", ":")).encode("utf-8")

    def loads(self, payload: bytes, base: type[T]) -> list[T]:
        """
        Deserialize a payload written by :meth:`dumps`.

        Raises:
            ValueError: payload is not a JSON array (``JSONDecodeError`` is a
                ``ValueError``), or an element does not fit ``base``
                (``ValidationError`` is also a ``ValueError``)
        """
        data = json.loads(payload.decode("utf-8"))
        if not isinstance(data, list):
            raise ValueError(f"Expected a JSON array, got {type(data).__name__}")
        return self.decode_many(data, base)


# Process-wide registry the Graph models register themselves with.
registry = TypeRegistry()
