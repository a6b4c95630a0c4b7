"""
Request assembly.

Combines the parsed client request with the route owner's rules (path
parameters, base filter, auth hooks) into the single search tree the CRUD
service executes.
"""
from typing import Any, Callable, Dict, List, Mapping, Optional

from fastapi import HTTPException, Request, status

from crudhatch.config import CrudConfig
from crudhatch.exceptions import QueryParseError
from crudhatch.logging_config import get_logger
from crudhatch.options import AuthOptions, CrudOptions
from crudhatch.request.conditions import AND, OR, parse_search_condition
from crudhatch.request.parser import RequestQueryParser
from crudhatch.request.query_string import fold_multi_items
from crudhatch.service.crud_service import CrudRequest

logger = get_logger(__name__)

CRUD_REQUEST_STATE_KEY = "crud_request"


class CrudRequestAssembler:
    """Builds ``CrudRequest`` objects with the parser settings of ``config``."""

    def __init__(self, config: Optional[CrudConfig] = None):
        self.config = config or CrudConfig()

    def assemble(
        self,
        query_params: Mapping[str, Any],
        path_params: Optional[Mapping[str, Any]],
        options: CrudOptions,
        action: str,
        principal_source: Any = None,
    ) -> CrudRequest:
        """
        Parse one request and merge it with the route rules.

        Args:
            query_params: Decoded query parameters
            path_params: Route parameters
            options: Merged route options
            action: Route name, e.g. ``get_many_base``
            principal_source: Object holding the principal (usually the request)

        Returns:
            CrudRequest: The assembled request

        Raises:
            QueryParseError: Malformed client input
        """
        parser = RequestQueryParser(self.config.query_parser)
        parser.parse_query(query_params, options.operators.custom)

        search = self.get_search(parser, options, action, path_params)
        auth = self.get_auth(parser, options, principal_source)

        if auth.get("or") is not None:
            raw = {OR: [auth["or"], {AND: search}]}
        else:
            raw = {AND: [part for part in [auth.get("filter"), *search] if part is not None]}

        parser.search = parse_search_condition(self._compact(raw))
        return CrudRequest(parsed=parser.get_parsed(), options=options, auth=auth.get("auth"))

    def get_search(
        self,
        parser: RequestQueryParser,
        options: CrudOptions,
        action: str,
        path_params: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        params_search = self.get_params_search(parser, options, path_params)
        client_search = parser.search.to_raw() if parser.search is not None else None
        base_filter = options.query.filter

        if callable(base_filter):
            condition = base_filter(client_search, action == "get_many_base") or {}
            return [*params_search, self._raw(condition)]

        if isinstance(base_filter, list) and base_filter:
            options_filter = [parser.convert_filter_to_search(f) for f in base_filter]
        else:
            options_filter = [self._raw(base_filter or {})]

        convert = parser.convert_filter_to_search
        if client_search is not None:
            search = [client_search]
        elif parser.filter and parser.or_:
            if len(parser.filter) == 1 and len(parser.or_) == 1:
                search = [{OR: [convert(parser.filter[0]), convert(parser.or_[0])]}]
            else:
                search = [
                    {
                        OR: [
                            {AND: [convert(f) for f in parser.filter]},
                            {AND: [convert(f) for f in parser.or_]},
                        ]
                    }
                ]
        elif parser.filter:
            search = [convert(f) for f in parser.filter]
        elif len(parser.or_) == 1:
            search = [convert(parser.or_[0])]
        elif parser.or_:
            search = [{OR: [convert(f) for f in parser.or_]}]
        else:
            search = []

        return [*params_search, *options_filter, *search]

    def get_params_search(
        self,
        parser: RequestQueryParser,
        options: CrudOptions,
        path_params: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        if not path_params:
            return []
        parser.parse_params(path_params, options.params)
        return [parser.convert_filter_to_search(f) for f in parser.param_filter]

    def get_auth(self, parser: RequestQueryParser, options: CrudOptions, principal_source: Any) -> Dict[str, Any]:
        """
        Evaluate the auth hooks. An ``or`` condition suppresses ``filter``.
        """
        auth: Dict[str, Any] = {}
        rules: Optional[AuthOptions] = options.auth
        if rules is None:
            return auth

        principal = self._principal(rules, principal_source)
        if rules.property:
            if principal is not None and (not isinstance(principal, dict) or principal):
                auth["auth"] = principal

        if rules.or_ is not None:
            auth["or"] = self._optional_raw(rules.or_(principal))

        if rules.filter is not None and auth.get("or") is None:
            auth["filter"] = self._raw(rules.filter(principal) or {})

        if rules.persist is not None:
            parser.set_auth_persist(rules.persist(principal))

        transform: Dict[str, Any] = {}
        if rules.transform_options is not None:
            transform.update(rules.transform_options(principal) or {})
        if rules.groups is not None:
            transform["groups"] = rules.groups(principal)
        parser.set_transform_options(transform)

        return auth

    @staticmethod
    def _principal(rules: AuthOptions, source: Any) -> Any:
        if not rules.property:
            return source
        state = getattr(source, "state", None)
        if state is not None:
            return getattr(state, rules.property, None)
        if isinstance(source, Mapping):
            return source.get(rules.property)
        return getattr(source, rules.property, None)

    @staticmethod
    def _raw(condition: Any) -> Dict[str, Any]:
        if hasattr(condition, "to_raw"):
            return condition.to_raw()
        return condition

    def _optional_raw(self, condition: Any) -> Optional[Dict[str, Any]]:
        return None if condition is None else self._raw(condition)

    def _compact(self, raw: Any) -> Any:
        """Drop empty objects from combinator arrays; an array left empty drops its key."""
        if isinstance(raw, list):
            return [item for item in (self._compact(item) for item in raw) if item != {}]
        if not isinstance(raw, dict):
            return raw
        compacted: Dict[str, Any] = {}
        for key, value in raw.items():
            if key in (AND, OR) and isinstance(value, list):
                items = self._compact(value)
                if items:
                    compacted[key] = items
            else:
                compacted[key] = value
        return compacted


def crud_request_dependency(
    assembler: CrudRequestAssembler, options: CrudOptions, action: str
) -> Callable[[Request], Any]:
    """
    FastAPI dependency assembling the request once and storing it on
    ``request.state``. ``QueryParseError`` becomes an HTTP 400.
    """

    async def dependency(request: Request) -> CrudRequest:
        existing = getattr(request.state, CRUD_REQUEST_STATE_KEY, None)
        if existing is not None:
            return existing

        try:
            crud_request = assembler.assemble(
                fold_multi_items(request.query_params.multi_items()),
                dict(request.path_params),
                options,
                action,
                request,
            )
        except QueryParseError as error:
            logger.debug("Rejected query for %s: %s", request.url.path, error.message)
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error.message)

        setattr(request.state, CRUD_REQUEST_STATE_KEY, crud_request)
        return crud_request

    return dependency
