"""Shared plumbing for HTTP connectors."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, ClassVar, Dict, Iterable, List, Optional

from syncs.lib.errors import ConfigurationError, MalformedResponseError
from syncs.lib.http import ApiClient
from syncs.lib.models import parse_timestamp
from syncs.lib.pagination import PaginationConfig, build_pagination_config_from_dict
from syncs.lib.selector import StreamKind

logger = logging.getLogger(__name__)

__all__ = ["HttpSource", "require_field", "require_list", "require_timestamp"]


def require_list(data: Any, key: Optional[str], *, partition: Optional[str] = None) -> List[Any]:
    """The list at ``data[key]`` (or ``data`` itself when ``key`` is None)."""
    if key is None or data is None:
        value = data
    elif isinstance(data, dict):
        value = data.get(key)
    else:
        raise MalformedResponseError(
            f"Expected an object holding {key!r}, got {type(data).__name__}",
            payload=data,
            partition=partition,
        )
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedResponseError(
            f"Expected a list{f' at {key!r}' if key else ''}, got {type(value).__name__}",
            payload=data,
            partition=partition,
        )
    return value


def require_field(item: Dict[str, Any], key: str, *, partition: Optional[str] = None) -> Any:
    if not isinstance(item, dict) or item.get(key) is None:
        raise MalformedResponseError(f"Record is missing {key!r}", payload=item, partition=partition)
    return item[key]


def require_timestamp(item: Dict[str, Any], key: str, *, partition: Optional[str] = None) -> datetime:
    value = require_field(item, key, partition=partition)
    try:
        return parse_timestamp(value)
    except ValueError as e:
        raise MalformedResponseError(f"Invalid timestamp in {key!r}: {value!r}", payload=item, partition=partition) from e


class HttpSource:
    """Base class for connectors backed by an ``ApiClient``.

    Subclasses set ``name``, ``kind`` and ``default_base_url`` and implement
    either ``fetch_page`` or the export job pair. Partitions come from the
    configuration when listed there, otherwise from ``discover_partitions``.
    """

    name: ClassVar[str] = ""
    kind: ClassVar[StreamKind] = StreamKind.CUTOFF
    default_base_url: ClassVar[str] = ""
    descending: ClassVar[bool] = False

    def __init__(
        self,
        client: ApiClient,
        *,
        partitions: Optional[Iterable[str]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.client = client
        self.partitions = list(partitions or [])
        self.options = dict(options or {})
        for partition in self.partitions:
            self.validate_partition(partition)

    def validate_partition(self, partition: str) -> None:
        """Raise ConfigurationError for a partition name this connector cannot sync."""
        if not partition.strip():
            raise ConfigurationError("Partition names must not be empty", field="partitions")

    def enumerate_partitions(self) -> List[str]:
        if self.partitions:
            return list(self.partitions)
        discovered = self.discover_partitions()
        logger.info("Discovered %d partitions for %s", len(discovered), self.name)
        return discovered

    def discover_partitions(self) -> List[str]:
        raise ConfigurationError(
            f"{self.name} needs an explicit 'partitions' list",
            field="partitions",
        )

    def pagination_config(self, **defaults: Any) -> PaginationConfig:
        """The connector's pagination ``defaults`` overlaid with the ``pagination`` option.

        The option takes the keys of ``build_pagination_config_from_dict``,
        e.g. ``{"pagination_type": "offset", "limit_param": "per_page"}`` for
        a proxy that pages differently from the upstream API. A top-level
        ``page_size`` option overrides the default page size.
        """
        override = self.options.get("pagination") or {}
        if not isinstance(override, dict):
            raise ConfigurationError(
                "The 'pagination' option must be a mapping",
                field="options.pagination",
                value=override,
            )
        merged = dict(defaults)
        if self.options.get("page_size") is not None:
            merged["page_size"] = self.options["page_size"]
        merged.update(override)
        return build_pagination_config_from_dict(merged)
