"""
Process-wide configuration.

A ``CrudConfig`` is built once at startup and handed explicitly to the parser,
the assembler and the router. It is frozen; nothing mutates it afterwards.
"""
import os
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from crudhatch.options import (
    AuthOptions,
    CrudOptions,
    OperatorsOptions,
    ParamOption,
    RouteName,
    RoutesOptions,
)

LOGICAL_PARAMS = (
    "fields",
    "search",
    "filter",
    "or",
    "join",
    "sort",
    "limit",
    "offset",
    "page",
    "cache",
    "include_deleted",
    "extra",
)


def default_param_names() -> Dict[str, List[str]]:
    return {
        "fields": ["fields", "select"],
        "search": ["s", "search"],
        "filter": ["filter"],
        "or": ["or"],
        "join": ["join"],
        "sort": ["sort"],
        "limit": ["limit", "per_page"],
        "offset": ["offset"],
        "page": ["page"],
        "cache": ["cache"],
        "include_deleted": ["include_deleted", "includeDeleted"],
        "extra": ["extra"],
    }


class QueryParserOptions(BaseModel):
    """Query-string grammar: parameter-name aliases and delimiters."""

    model_config = ConfigDict(frozen=True)

    param_names: Dict[str, List[str]] = Field(default_factory=default_param_names)
    delim: str = "||"
    delim_str: str = ","

    def names(self, logical: str) -> List[str]:
        return self.param_names.get(logical, [])

    def with_aliases(self, **aliases: Union[str, List[str]]) -> "QueryParserOptions":
        """Return a copy with some logical names remapped (``filter="f"``)."""
        names = dict(self.param_names)
        for logical, alias in aliases.items():
            if logical not in LOGICAL_PARAMS:
                raise ValueError(f"Unknown query parameter '{logical}'")
            names[logical] = [alias] if isinstance(alias, str) else list(alias)
        return self.model_copy(update={"param_names": names})


class GlobalQueryOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    always_paginate: bool = False
    soft_delete: bool = False
    limit: Optional[int] = None
    max_limit: Optional[int] = None
    cache: Union[int, bool] = False


class CrudConfig(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    dialect: Literal["postgres", "mysql"] = "postgres"
    query_parser: QueryParserOptions = QueryParserOptions()
    query: GlobalQueryOptions = GlobalQueryOptions()
    routes: RoutesOptions = RoutesOptions()
    params: Dict[str, ParamOption] = {}
    auth: Optional[AuthOptions] = None
    operators: OperatorsOptions = OperatorsOptions()
    cache_size: int = Field(1024, ge=1, description="Entries kept by the result cache")

    @classmethod
    def from_env(cls, **overrides: Any) -> "CrudConfig":
        """Build a configuration from ``CRUDHATCH_*`` environment variables."""
        parser = QueryParserOptions(
            delim=os.getenv("CRUDHATCH_DELIM", "||"),
            delim_str=os.getenv("CRUDHATCH_DELIM_STR", ","),
        )
        max_limit = os.getenv("CRUDHATCH_MAX_LIMIT")
        query = GlobalQueryOptions(
            always_paginate=_env_flag("CRUDHATCH_ALWAYS_PAGINATE"),
            soft_delete=_env_flag("CRUDHATCH_SOFT_DELETE"),
            max_limit=int(max_limit) if max_limit else None,
        )
        cache_size = os.getenv("CRUDHATCH_CACHE_SIZE")
        values: Dict[str, Any] = {
            "dialect": os.getenv("CRUDHATCH_DIALECT", "postgres").lower(),
            "query_parser": parser,
            "query": query,
        }
        if cache_size:
            values["cache_size"] = int(cache_size)
        values.update(overrides)
        return cls(**values)

    def merge_options(self, options: Optional[CrudOptions] = None) -> CrudOptions:
        """
        Lay per-route options over the global defaults.

        Any field a route owner set explicitly wins; everything else comes from
        this configuration. Custom operators from both sides are combined.
        """
        options = options if options is not None else CrudOptions()

        query = _overlay(
            options.query,
            {name: getattr(self.query, name) for name in type(self.query).model_fields},
        )

        routes_update = {
            name: _overlay(getattr(options.routes, name), _set_values(getattr(self.routes, name)))
            for name in RouteName.__args__
        }
        routes = _overlay(options.routes.model_copy(update=routes_update), _set_values(self.routes))

        params = options.params
        if "params" not in options.model_fields_set and self.params:
            params = dict(self.params)

        auth = options.auth
        if auth is None:
            auth = self.auth
        elif self.auth is not None:
            auth = _overlay(auth, _set_values(self.auth))

        operators = OperatorsOptions(custom={**self.operators.custom, **options.operators.custom})

        return options.model_copy(
            update={
                "query": query,
                "routes": routes,
                "params": params,
                "auth": auth,
                "operators": operators,
            }
        )


def _set_values(model: BaseModel) -> Dict[str, Any]:
    return {name: getattr(model, name) for name in model.model_fields_set}


def _overlay(model: BaseModel, defaults: Dict[str, Any]) -> BaseModel:
    """Copy of ``model`` where every field it never set takes its value from ``defaults``."""
    unset = {name: value for name, value in defaults.items() if name not in model.model_fields_set}
    return model.model_copy(update=unset)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").strip().lower() in {"1", "true", "yes", "on"}
