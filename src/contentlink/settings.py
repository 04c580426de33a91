"""Content-linking configuration and the settings cache.

``LinkingConfig`` enumerates every tunable of the linking engine with its
default, so the engine runs unconfigured. Values can be merged from a plain
mapping (``linking_config_from_dict``) or loaded from the ``system_settings``
table of a ``ContentStore`` (``load_linking_config``), keyed
``content_linking.<name>``.

Stored settings are read through a ``SettingsCache`` owned by the caller.
One cache is constructed per process and handed to whoever loads settings;
``invalidate()`` drops cached values after an operator edits them.
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, replace
from typing import Any

log = logging.getLogger(__name__)

SETTING_KEY_PREFIX = "content_linking."
DEFAULT_CACHE_TTL_SECONDS = 30.0


# ---------------------------------------------------------------------------
# Config dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class LinkingConfig:
    """Tunable thresholds and boosts for one linking run."""

    lo_ref_match_boost: float = 0.8
    chapter_match_boost: float = 0.3
    min_keyword_score: float = 0.1
    min_link_score: float = 0.2
    use_vector_similarity: bool = False
    min_vector_similarity: float = 0.6
    confirm_workers: int = 1


DEFAULT_LINKING_CONFIG = LinkingConfig()


@dataclass(frozen=True, slots=True)
class SettingDef:
    """Registry entry describing one stored setting."""

    key: str
    field: str
    type: str  # "float" | "int" | "bool"
    default: float | int | bool
    min: float | None = None
    max: float | None = None
    description: str = ""


def _def(field_name: str, type_: str, lo: float | None, hi: float | None, desc: str) -> SettingDef:
    return SettingDef(
        key=SETTING_KEY_PREFIX + field_name,
        field=field_name,
        type=type_,
        default=getattr(DEFAULT_LINKING_CONFIG, field_name),
        min=lo,
        max=hi,
        description=desc,
    )


SETTING_DEFS: tuple[SettingDef, ...] = (
    _def("lo_ref_match_boost", "float", 0.0, 2.0,
         "Boost when item and assertion share a learning outcome reference"),
    _def("chapter_match_boost", "float", 0.0, 2.0,
         "Boost for a chapter match; a section match adds 40% of this"),
    _def("min_keyword_score", "float", 0.0, 1.0,
         "Minimum keyword Jaccard similarity before it contributes"),
    _def("min_link_score", "float", 0.0, 5.0,
         "Minimum composite score required to link an item"),
    _def("use_vector_similarity", "bool", None, None,
         "Confirm the best lexical match with embedding similarity"),
    _def("min_vector_similarity", "float", -1.0, 1.0,
         "Minimum cosine similarity for vector confirmation"),
    _def("confirm_workers", "int", 1, 16,
         "Concurrent embedding calls during vector confirmation"),
)

_DEFS_BY_FIELD: dict[str, SettingDef] = {d.field: d for d in SETTING_DEFS}

# camelCase names accepted for payloads written by the admin UI
_CAMEL_ALIASES: dict[str, str] = {
    "loRefMatchBoost": "lo_ref_match_boost",
    "chapterMatchBoost": "chapter_match_boost",
    "minKeywordScore": "min_keyword_score",
    "minLinkScore": "min_link_score",
    "useVectorSimilarity": "use_vector_similarity",
    "minVectorSimilarity": "min_vector_similarity",
    "confirmWorkers": "confirm_workers",
}


# ---------------------------------------------------------------------------
# Validation / merging
# ---------------------------------------------------------------------------

def coerce_setting(defn: SettingDef, value: Any) -> float | int | bool:
    """Validate and coerce a raw value for *defn*.

    Raises:
        ValueError: wrong type or out of range.
    """
    if defn.type == "bool":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
            return value.strip().lower() == "true"
        raise ValueError(f"{defn.key}: expected bool, got {value!r}")

    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"{defn.key}: expected {defn.type}, got {value!r}")
    try:
        num: float | int = int(value) if defn.type == "int" else float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{defn.key}: expected {defn.type}, got {value!r}") from None
    if defn.type == "int" and isinstance(value, float) and not value.is_integer():
        raise ValueError(f"{defn.key}: expected int, got {value!r}")
    if num != num:  # NaN
        raise ValueError(f"{defn.key}: NaN is not allowed")
    if defn.min is not None and num < defn.min:
        raise ValueError(f"{defn.key}: {num} is below minimum {defn.min}")
    if defn.max is not None and num > defn.max:
        raise ValueError(f"{defn.key}: {num} is above maximum {defn.max}")
    return num


def _field_name(key: str) -> str | None:
    if key in _CAMEL_ALIASES:
        return _CAMEL_ALIASES[key]
    if key.startswith(SETTING_KEY_PREFIX):
        key = key[len(SETTING_KEY_PREFIX):]
    return key if key in _DEFS_BY_FIELD else None


def linking_config_from_dict(
    d: Mapping[str, Any],
    *,
    base: LinkingConfig = DEFAULT_LINKING_CONFIG,
) -> LinkingConfig:
    """Merge a mapping of overrides over *base*.

    Accepts snake_case field names, camelCase names, and full
    ``content_linking.*`` keys. Unknown keys are ignored; ``None`` values
    keep the base value.

    Raises:
        ValueError: an override has the wrong type or is out of range.
    """
    updates: dict[str, Any] = {}
    for key, value in d.items():
        name = _field_name(str(key))
        if name is None or value is None:
            continue
        updates[name] = coerce_setting(_DEFS_BY_FIELD[name], value)
    return replace(base, **updates) if updates else base


def linking_config_to_dict(config: LinkingConfig) -> dict[str, Any]:
    """Snake_case dict of every config field."""
    return asdict(config)


# ---------------------------------------------------------------------------
# Settings cache
# ---------------------------------------------------------------------------

class SettingsCache:
    """TTL cache for stored setting values.

    Parameters
    ----------
    ttl_seconds:
        How long a loaded value is served before reloading.
    clock:
        Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        """Return the cached value for *key*, calling *loader* on a miss.

        Exceptions from *loader* propagate and nothing is cached.
        """
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[1] > now:
                return entry[0]
        value = loader()
        with self._lock:
            self._entries[key] = (value, now + self._ttl)
        return value

    def invalidate(self, key: str | None = None) -> None:
        """Drop one key, or everything when *key* is None."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Store-backed loader
# ---------------------------------------------------------------------------

_MISSING = object()


def load_linking_config(
    store: Any,
    cache: SettingsCache | None = None,
) -> LinkingConfig:
    """Build a ``LinkingConfig`` from the store's ``system_settings`` rows.

    Missing rows fall back to defaults. A stored value that fails
    validation is logged and replaced by its default. If the store cannot
    be read at all, the defaults are returned.
    """
    values: dict[str, Any] = {}
    for defn in SETTING_DEFS:
        def _load(k: str = defn.key) -> Any:
            stored = store.get_setting(k)
            return _MISSING if stored is None else stored

        try:
            raw = cache.get_or_load(defn.key, _load) if cache is not None else _load()
        except Exception as exc:
            log.warning("Failed to load setting %s, using default: %s", defn.key, exc)
            continue
        if raw is _MISSING:
            continue
        try:
            values[defn.field] = coerce_setting(defn, raw)
        except ValueError as exc:
            log.warning("Ignoring invalid stored setting: %s", exc)
    return replace(DEFAULT_LINKING_CONFIG, **values) if values else DEFAULT_LINKING_CONFIG
