from crudhatch.config import CrudConfig, QueryParserOptions
from crudhatch.exceptions import (
    ClientInputError,
    ColumnAuthorizationError,
    CrudError,
    EmptyPayloadError,
    InvalidConditionError,
    NotFoundError,
    QueryParseError,
)
from crudhatch.options import (
    AuthOptions,
    CrudOptions,
    JoinOption,
    OperatorsOptions,
    ParamOption,
    QueryOptions,
    RouteOptions,
    RoutesOptions,
)
from crudhatch.request.builder import RequestQueryBuilder
from crudhatch.request.models import ComparisonOperator, CustomOperator, QueryFilter, QueryJoin, QuerySort
from crudhatch.request.parser import RequestQueryParser
from crudhatch.router.router import CrudRouter
from crudhatch.service.crud_service import CrudRequest, CrudService
from crudhatch.service.metadata import EntityMetadata, MetadataRegistry
from crudhatch.service.storage import AsyncpgStorage

__all__ = [
    "AsyncpgStorage",
    "AuthOptions",
    "ClientInputError",
    "ColumnAuthorizationError",
    "ComparisonOperator",
    "CrudConfig",
    "CrudError",
    "CrudOptions",
    "CrudRequest",
    "CrudRouter",
    "CrudService",
    "CustomOperator",
    "EmptyPayloadError",
    "EntityMetadata",
    "InvalidConditionError",
    "JoinOption",
    "MetadataRegistry",
    "NotFoundError",
    "OperatorsOptions",
    "ParamOption",
    "QueryFilter",
    "QueryJoin",
    "QueryOptions",
    "QueryParseError",
    "QueryParserOptions",
    "QuerySort",
    "RequestQueryBuilder",
    "RequestQueryParser",
    "RouteOptions",
    "RoutesOptions",
]
