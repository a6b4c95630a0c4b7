"""
Per-route options declared by route owners.

``CrudOptions`` carries everything the assembler, the compiler and the CRUD
service need to know about one mounted entity: which columns and relations are
exposed, server-side filters, path parameters, route behaviour and auth hooks.
"""
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from crudhatch.request.models import CustomOperator, QueryFilter, QuerySort

RouteName = Literal[
    "get_many_base",
    "get_one_base",
    "create_one_base",
    "create_many_base",
    "update_one_base",
    "replace_one_base",
    "delete_one_base",
    "recover_one_base",
]


class JoinOption(BaseModel):
    """An allow-listed relation."""

    alias: Optional[str] = None
    allow: Optional[List[str]] = None
    exclude: Optional[List[str]] = None
    persist: Optional[List[str]] = None
    eager: bool = False
    required: bool = False
    select: bool = True


class QueryOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    allow: Optional[List[str]] = None
    exclude: Optional[List[str]] = None
    persist: Optional[List[str]] = None
    filter: Union[List[QueryFilter], Dict[str, Any], Callable[..., Any], None] = Field(
        None,
        description="Base condition: raw search object, list of filters or "
        "callable (search, is_get_many) -> condition",
    )
    join: Dict[str, JoinOption] = {}
    sort: List[QuerySort] = []
    limit: Optional[int] = None
    max_limit: Optional[int] = None
    cache: Union[int, bool] = False
    always_paginate: bool = False
    soft_delete: bool = False


class ParamOption(BaseModel):
    """Describes one path parameter."""

    field: Optional[str] = None
    type: Literal["number", "string", "uuid"] = "string"
    primary: bool = False
    disabled: bool = False


class RouteOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    dependencies: List[Any] = []
    return_shallow: bool = False
    allow_params_override: bool = False
    return_deleted: bool = False
    return_recovered: bool = False


class RoutesOptions(BaseModel):
    only: List[RouteName] = []
    exclude: List[RouteName] = []
    get_many_base: RouteOptions = RouteOptions()
    get_one_base: RouteOptions = RouteOptions()
    create_one_base: RouteOptions = RouteOptions()
    create_many_base: RouteOptions = RouteOptions()
    update_one_base: RouteOptions = RouteOptions()
    replace_one_base: RouteOptions = RouteOptions()
    delete_one_base: RouteOptions = RouteOptions()
    recover_one_base: RouteOptions = RouteOptions()

    def enabled(self) -> List[str]:
        names = list(RouteName.__args__)
        if self.only:
            names = [name for name in names if name in self.only]
        return [name for name in names if name not in self.exclude]


class AuthOptions(BaseModel):
    """
    Hooks evaluated against the authenticated principal.

    ``property`` names the ``request.state`` attribute holding the principal;
    when unset the hooks receive the request itself.
    """

    model_config = ConfigDict(populate_by_name=True)

    property: Optional[str] = None
    filter: Optional[Callable[[Any], Any]] = None
    or_: Optional[Callable[[Any], Any]] = Field(None, alias="or")
    persist: Optional[Callable[[Any], Dict[str, Any]]] = None
    groups: Optional[Callable[[Any], List[str]]] = None
    transform_options: Optional[Callable[[Any], Dict[str, Any]]] = None


class OperatorsOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    custom: Dict[str, CustomOperator] = {}


def default_params() -> Dict[str, ParamOption]:
    return {"id": ParamOption(field="id", type="number", primary=True)}


class CrudOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    query: QueryOptions = QueryOptions()
    params: Dict[str, ParamOption] = Field(default_factory=default_params)
    routes: RoutesOptions = RoutesOptions()
    auth: Optional[AuthOptions] = None
    operators: OperatorsOptions = OperatorsOptions()

    def primary_params(self) -> List[str]:
        return [
            option.field
            for option in self.params.values()
            if option.primary and option.field and not option.disabled
        ]
