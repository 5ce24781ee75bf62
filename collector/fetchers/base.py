import json
from datetime import datetime
from typing import Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, ValidationError

from collector.errors import ConfigInvalidError
from collector.models import FetchResult, Source

ConfigT = TypeVar("ConfigT", bound=BaseModel)


@runtime_checkable
class Fetcher(Protocol):
    """What the scheduler needs from a per-type fetcher."""

    @property
    def type(self) -> str:
        ...

    def validate(self) -> None:
        """Raise ConfigInvalidError if the source config is unusable."""
        ...

    async def fetch(self, since: datetime) -> FetchResult:
        """Return every article (and complete comment trees) newer than `since`."""
        ...


def validate_enum(value: str, valid_values: list[str], field_name: str) -> str:
    if value not in valid_values:
        allowed = ", ".join(f"'{v}'" for v in valid_values)
        raise ValueError(f"invalid {field_name}: {value} (must be one of: {allowed})")
    return value


def decode_config(source: Source, model: type[ConfigT]) -> ConfigT:
    """Decode a source's opaque JSON config into the fetcher's own schema."""
    try:
        raw = json.loads(source.config or "{}")
    except json.JSONDecodeError as exc:
        raise ConfigInvalidError(f"invalid {source.type} config: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigInvalidError(f"invalid {source.type} config: expected a JSON object")
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigInvalidError(f"invalid {source.type} config: {problems}") from exc
