"""
Unit tests for crudhatch.config module.
Tests environment loading, parameter aliases and option merging.
"""

import pytest
from pydantic import ValidationError

from crudhatch.config import CrudConfig, GlobalQueryOptions, QueryParserOptions
from crudhatch.options import (
    AuthOptions,
    CrudOptions,
    OperatorsOptions,
    ParamOption,
    QueryOptions,
    RouteOptions,
    RoutesOptions,
)
from crudhatch.request.models import CustomOperator


class TestQueryParserOptions:
    def test_defaults(self):
        options = QueryParserOptions()

        assert options.names("search") == ["s", "search"]
        assert options.names("limit") == ["limit", "per_page"]
        assert options.delim == "||"
        assert options.delim_str == ","

    def test_with_aliases(self):
        options = QueryParserOptions().with_aliases(filter="f", sort=["order", "sort"])

        assert options.names("filter") == ["f"]
        assert options.names("sort") == ["order", "sort"]
        assert QueryParserOptions().names("filter") == ["filter"]

    def test_unknown_alias(self):
        with pytest.raises(ValueError):
            QueryParserOptions().with_aliases(where="w")


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("CRUDHATCH_DIALECT", "MySQL")
        monkeypatch.setenv("CRUDHATCH_DELIM", "::")
        monkeypatch.setenv("CRUDHATCH_MAX_LIMIT", "50")
        monkeypatch.setenv("CRUDHATCH_SOFT_DELETE", "true")

        config = CrudConfig.from_env()

        assert config.dialect == "mysql"
        assert config.query_parser.delim == "::"
        assert config.query.max_limit == 50
        assert config.query.soft_delete is True
        assert config.query.always_paginate is False

    def test_cache_size(self, monkeypatch):
        monkeypatch.setenv("CRUDHATCH_CACHE_SIZE", "64")

        assert CrudConfig.from_env().cache_size == 64
        assert CrudConfig().cache_size == 1024

    def test_cache_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            CrudConfig(cache_size=0)

    def test_overrides_win(self, monkeypatch):
        monkeypatch.delenv("CRUDHATCH_DIALECT", raising=False)

        config = CrudConfig.from_env(dialect="mysql")

        assert config.dialect == "mysql"


class TestMergeOptions:
    """Test laying route options over the global configuration."""

    def test_global_defaults_fill_unset_fields(self):
        config = CrudConfig(query=GlobalQueryOptions(max_limit=100, soft_delete=True))

        merged = config.merge_options(CrudOptions(query=QueryOptions(limit=10)))

        assert merged.query.limit == 10
        assert merged.query.max_limit == 100
        assert merged.query.soft_delete is True

    def test_route_values_win(self):
        config = CrudConfig(query=GlobalQueryOptions(max_limit=100))

        merged = config.merge_options(CrudOptions(query=QueryOptions(max_limit=5)))

        assert merged.query.max_limit == 5

    def test_none_options(self):
        merged = CrudConfig().merge_options()

        assert merged.params["id"].primary is True
        assert merged.auth is None

    def test_params(self):
        config = CrudConfig(params={"uuid": ParamOption(field="uuid", type="uuid", primary=True)})

        assert list(config.merge_options().params) == ["uuid"]
        own = CrudOptions(params={"slug": ParamOption(field="slug", primary=True)})
        assert list(config.merge_options(own).params) == ["slug"]

    def test_routes(self):
        config = CrudConfig(
            routes=RoutesOptions(
                exclude=["recover_one_base"],
                delete_one_base=RouteOptions(return_deleted=True),
            )
        )
        own = CrudOptions(routes=RoutesOptions(delete_one_base=RouteOptions(return_shallow=True)))

        merged = config.merge_options(own)

        assert merged.routes.exclude == ["recover_one_base"]
        assert merged.routes.delete_one_base.return_deleted is True
        assert merged.routes.delete_one_base.return_shallow is True

    def test_auth(self):
        persist = lambda user: {"owner_id": 1}
        config = CrudConfig(auth=AuthOptions(property="user", persist=persist))

        assert config.merge_options().auth.persist is persist
        merged = config.merge_options(CrudOptions(auth=AuthOptions(property="account")))
        assert merged.auth.property == "account"
        assert merged.auth.persist is persist

    def test_custom_operators_combined(self):
        config = CrudConfig(
            operators=OperatorsOptions(custom={"$a": CustomOperator(query=lambda field, param: f"{field} = :{param}")})
        )
        own = CrudOptions(
            operators=OperatorsOptions(custom={"$b": CustomOperator(query=lambda field, param: f"{field} <> :{param}")})
        )

        assert set(config.merge_options(own).operators.custom) == {"$a", "$b"}
