"""Where a provider gets the value it delivers for a data spec.

A data spec names a pair such as ``"BTC.GBP"``; sources return the value as
an integer scaled by their configured number of decimals.
"""

import logging
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

import httpx

from ..config import DataSourceConfig
from ..errors import DataSourceError

logger = logging.getLogger(__name__)


class DataSource(Protocol):
    async def fetch(self, data_spec: str) -> int: ...


def split_data_spec(data_spec: str) -> tuple[str, str]:
    """Split ``"BASE.TARGET"`` into its two symbols."""
    base, sep, target = data_spec.partition(".")
    if not sep or not base or not target:
        raise DataSourceError(f"Malformed data spec {data_spec!r}, expected BASE.TARGET")
    return base.strip(), target.strip()


def scale_value(value: Any, decimals: int) -> int:
    """Convert a JSON number (or numeric string) to a scaled integer."""
    try:
        scaled = Decimal(str(value)) * (Decimal(10) ** decimals)
    except InvalidOperation as e:
        raise DataSourceError(f"Not a number: {value!r}") from e
    if not scaled.is_finite():
        raise DataSourceError(f"Not a finite number: {value!r}")
    if scaled < 0:
        raise DataSourceError(f"Negative value {value!r} cannot be delivered")
    return int(scaled)


class StaticDataSource:
    """Serves fixed values, mainly for local runs and tests."""

    def __init__(self, values: Mapping[str, int], default: int | None = None) -> None:
        self.values = dict(values)
        self.default = default

    async def fetch(self, data_spec: str) -> int:
        if data_spec in self.values:
            return self.values[data_spec]
        if self.default is not None:
            return self.default
        raise DataSourceError(f"No value configured for {data_spec!r}")


class HttpJsonDataSource:
    """Fetches a value from a JSON HTTP API.

    ``url_template`` and ``json_path`` may use ``{base}``, ``{target}`` and
    ``{spec}`` placeholders. ``json_path`` is a dot-separated path into the
    response body; list indices are written as plain integers.

    Example:
        HttpJsonDataSource(
            "https://api.example.com/price?fsym={base}&tsyms={target}",
            json_path="{target}",
            decimals=8,
        )
    """

    def __init__(
        self,
        url_template: str,
        json_path: str,
        decimals: int = 18,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url_template = url_template
        self.json_path = json_path
        self.decimals = decimals
        self.timeout = timeout
        self.transport = transport

    def _placeholders(self, data_spec: str) -> dict[str, str]:
        base, target = split_data_spec(data_spec)
        return {"base": base, "target": target, "spec": data_spec}

    async def fetch(self, data_spec: str) -> int:
        placeholders = self._placeholders(data_spec)
        url = self.url_template.format(**placeholders)
        path = self.json_path.format(**placeholders)

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.get(url)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPError as e:
            raise DataSourceError(f"Request for {data_spec!r} failed: {e}") from e
        except ValueError as e:
            raise DataSourceError(f"Response for {data_spec!r} is not JSON: {e}") from e

        value = self._extract(body, path)
        logger.debug(f"Fetched {data_spec}: {value}")
        return scale_value(value, self.decimals)

    @staticmethod
    def _extract(body: Any, path: str) -> Any:
        node = body
        for part in filter(None, path.split(".")):
            match node:
                case Mapping() if part in node:
                    node = node[part]
                case list() if part.isdigit() and int(part) < len(node):
                    node = node[int(part)]
                case _:
                    raise DataSourceError(f"Path {path!r} not found in response")
        return node


def build_data_source(config: DataSourceConfig) -> DataSource:
    if config.url_template:
        return HttpJsonDataSource(
            config.url_template,
            json_path=config.json_path,
            decimals=config.decimals,
            timeout=config.timeout,
        )
    return StaticDataSource(dict(config.static_values))
