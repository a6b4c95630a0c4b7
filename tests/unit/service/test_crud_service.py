"""
Unit tests for crudhatch.service.crud_service module.
Tests query building, hydration and the CRUD operations of CrudService
against a storage double.
"""

import logging
import pytest
from unittest.mock import AsyncMock

from crudhatch.config import CrudConfig
from crudhatch.exceptions import EmptyPayloadError, InvalidConditionError, NotFoundError
from crudhatch.logging_config import ContextFilter
from crudhatch.options import CrudOptions, JoinOption, QueryOptions, RouteOptions, RoutesOptions
from crudhatch.request.conditions import LeafCondition
from crudhatch.request.models import QueryFilter, QueryJoin, QuerySort
from crudhatch.service.crud_service import CrudService
from crudhatch.service.pagination import GetManyResponse
from crudhatch.sql.dialects import MySQLDialect

BY_ID = LeafCondition(fields={"id": {"$eq": 1}})
ID_PARAM = [QueryFilter(field="id", operator="$eq", value=1)]


def make_options(join=None, routes=None, **query):
    return CrudConfig().merge_options(
        CrudOptions(query=QueryOptions(join=join or {}, **query), routes=routes or RoutesOptions())
    )


def squash(sql):
    return " ".join(sql.split())


def fetched_sql(storage, call=-1):
    return squash(storage.fetch.await_args_list[call].args[0])


class TestSelectBuilding:
    """Test the SELECT built for get-many."""

    @pytest.mark.asyncio
    async def test_requested_fields_plus_primary_key(self, service, storage, make_request):
        await service.get_many(make_request(fields=["name"]))

        assert fetched_sql(storage) == (
            'SELECT "user"."name" AS user__name, "user"."id" AS user__id '
            'FROM "users" AS "user" WHERE "user"."deleted_at" IS NULL'
        )

    @pytest.mark.asyncio
    async def test_all_allowed_columns_by_default(self, service, storage, make_request):
        await service.get_many(make_request(options=make_options(exclude=["email"])))

        sql = fetched_sql(storage)
        assert '"user"."email"' not in sql
        assert '"user"."profile_bio" AS "user__profile.bio"' in sql

    @pytest.mark.asyncio
    async def test_persisted_columns_always_selected(self, service, storage, make_request):
        options = make_options(allow=["name"], persist=["is_active"])

        await service.get_many(make_request(options=options, fields=["name"]))

        assert fetched_sql(storage).startswith(
            'SELECT "user"."is_active" AS user__is_active, "user"."name" AS user__name, '
            '"user"."id" AS user__id FROM'
        )

    @pytest.mark.asyncio
    async def test_search_and_sort(self, service, storage, make_request):
        await service.get_many(
            make_request(
                search=LeafCondition(fields={"age": {"$gt": 30}}),
                sort=[QuerySort(field="name", order="DESC")],
            )
        )

        assert fetched_sql(storage).endswith(
            'WHERE "user"."deleted_at" IS NULL AND "user"."age" > $1::INTEGER ORDER BY "user"."name" DESC'
        )
        assert storage.fetch.await_args.args[1] == [30]

    @pytest.mark.asyncio
    async def test_search_operands_take_column_types(self, service, storage, make_request):
        search = LeafCondition(fields={"name": 123, "age": {"$in": ["1", 2]}})

        await service.get_many(make_request(search=search))

        assert storage.fetch.await_args.args[1] == ["123", 1, 2]

    @pytest.mark.asyncio
    async def test_search_operand_not_matching_column_type(self, service, storage, make_request):
        with pytest.raises(InvalidConditionError, match="Invalid column 'age' value"):
            await service.get_many(make_request(search=LeafCondition(fields={"age": "old"})))
        storage.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_route_default_sort(self, service, storage, make_request):
        await service.get_many(make_request(options=make_options(sort=[QuerySort(field="id", order="DESC")])))

        assert fetched_sql(storage).endswith('ORDER BY "user"."id" DESC')

    @pytest.mark.asyncio
    async def test_include_deleted_requires_soft_delete(self, service, storage, make_request):
        await service.get_many(make_request(options=make_options(soft_delete=True), include_deleted=1))
        await service.get_many(make_request(options=make_options(soft_delete=False), include_deleted=1))

        assert "WHERE" not in fetched_sql(storage, 0)
        assert fetched_sql(storage, 1).endswith('WHERE "user"."deleted_at" IS NULL')

    @pytest.mark.asyncio
    async def test_cache(self, service, storage, make_request):
        options = make_options(cache=2000)

        await service.get_many(make_request(options=options))
        await service.get_many(make_request(options=options, cache=0))

        assert storage.fetch.await_args_list[0].args[2] == 2000
        assert storage.fetch.await_args_list[1].args[2] is None

    @pytest.mark.asyncio
    async def test_mysql_dialect(self, user_entity, metadata, storage, make_request):
        storage.dialect = MySQLDialect()
        service = CrudService(user_entity, storage, metadata)

        await service.get_many(make_request(fields=["name"], search=LeafCondition(fields={"name": "Jo"})))

        assert fetched_sql(storage) == (
            "SELECT `user`.`name` AS user__name, `user`.`id` AS user__id "
            "FROM `users` AS `user` WHERE `user`.`deleted_at` IS NULL AND `user`.`name` = %s"
        )
        assert storage.fetch.await_args.args[1] == ["Jo"]


class TestLogging:
    """The service logger carries the entity name."""

    def test_logger_context(self, service):
        assert service.logger.name == "crudhatch.service.crud_service.user"
        assert any(
            isinstance(f, ContextFilter) and f.context == {"entity": "user"} for f in service.logger.filters
        )

    @pytest.mark.asyncio
    async def test_records_carry_entity(self, service, make_request, caplog):
        options = make_options(join={"company": JoinOption()})

        with caplog.at_level(logging.WARNING):
            await service.get_many(make_request(options=options, join=[QueryJoin(field="projects")]))

        assert [record.entity for record in caplog.records] == ["user"]


class TestJoins:
    """Test joining allow-listed relations."""

    @pytest.mark.asyncio
    async def test_left_join_with_select(self, service, storage, make_request):
        await service.get_many(make_request(join=[QueryJoin(field="company", select=["name"])]))

        sql = fetched_sql(storage)
        assert 'LEFT OUTER JOIN "companies" AS "company" ON "user"."company_id" = "company"."id"' in sql
        assert '"company"."id" AS company__id, "company"."name" AS company__name' in sql
        assert '"company"."domain"' not in sql

    @pytest.mark.asyncio
    async def test_required_join_is_inner(self, service, storage, make_request):
        options = make_options(join={"company": JoinOption(required=True)})

        await service.get_many(make_request(options=options, join=[QueryJoin(field="company")]))

        sql = fetched_sql(storage)
        assert 'JOIN "companies" AS "company"' in sql
        assert "OUTER JOIN" not in sql

    @pytest.mark.asyncio
    async def test_eager_join(self, service, storage, make_request):
        options = make_options(join={"company": JoinOption(eager=True)})

        await service.get_many(make_request(options=options))

        assert 'LEFT OUTER JOIN "companies" AS "company"' in fetched_sql(storage)

    @pytest.mark.asyncio
    async def test_join_without_select(self, service, storage, make_request):
        options = make_options(join={"company": JoinOption(select=False)})

        await service.get_many(make_request(options=options, join=[QueryJoin(field="company")]))

        sql = fetched_sql(storage)
        assert 'LEFT OUTER JOIN "companies" AS "company"' in sql
        assert "company__" not in sql

    @pytest.mark.asyncio
    async def test_undeclared_join_is_skipped(self, service, storage, make_request, caplog):
        options = make_options(join={"company": JoinOption()})

        with caplog.at_level(logging.WARNING):
            await service.get_many(make_request(options=options, join=[QueryJoin(field="projects")]))

        assert "JOIN" not in fetched_sql(storage)
        assert 'relation "projects" not found in allowed relations' in caplog.text

    @pytest.mark.asyncio
    async def test_join_on_conditions(self, service, storage, make_request):
        join = QueryJoin(field="company", on=[QueryFilter(field="company.name", operator="$eq", value="Acme")])

        await service.get_many(make_request(join=[join], search=LeafCondition(fields={"age": 3})))

        assert 'ON "user"."company_id" = "company"."id" AND "company"."name" = $1::VARCHAR' in fetched_sql(storage)
        assert storage.fetch.await_args.args[1] == ["Acme", 3]

    @pytest.mark.asyncio
    async def test_search_on_joined_relation(self, service, storage, make_request):
        await service.get_many(
            make_request(join=[QueryJoin(field="company")], search=LeafCondition(fields={"company.name": "Acme"}))
        )

        assert fetched_sql(storage).endswith('AND "company"."name" = $1::VARCHAR')

    @pytest.mark.asyncio
    async def test_nested_join(self, service, storage, make_request):
        await service.get_many(
            make_request(join=[QueryJoin(field="projects"), QueryJoin(field="projects.company")])
        )

        sql = fetched_sql(storage)
        assert 'LEFT OUTER JOIN "projects" AS "projects" ON "user"."id" = "projects"."user_id"' in sql
        assert (
            'LEFT OUTER JOIN "companies" AS "project_company" '
            'ON "projects"."company_id" = "project_company"."id"' in sql
        )

    @pytest.mark.asyncio
    async def test_nested_join_without_parent_is_skipped(self, service, storage, make_request):
        await service.get_many(make_request(join=[QueryJoin(field="projects.company")]))

        assert "JOIN" not in fetched_sql(storage)

class TestHydration:
    """Test folding flat rows into nested entities."""

    @pytest.mark.asyncio
    async def test_to_one_and_to_many(self, service, storage, make_request):
        storage.fetch.return_value = [
            {"user__id": 1, "user__name": "A", "company__id": 10, "company__name": "Acme",
             "projects__id": 100, "projects__name": "P1"},
            {"user__id": 1, "user__name": "A", "company__id": 10, "company__name": "Acme",
             "projects__id": 101, "projects__name": "P2"},
            {"user__id": 2, "user__name": "B", "company__id": None, "company__name": None,
             "projects__id": None, "projects__name": None},
        ]

        result = await service.get_many(
            make_request(join=[QueryJoin(field="company"), QueryJoin(field="projects")])
        )

        assert result == [
            {"id": 1, "name": "A", "company": {"id": 10, "name": "Acme"},
             "projects": [{"id": 100, "name": "P1"}, {"id": 101, "name": "P2"}]},
            {"id": 2, "name": "B", "company": None, "projects": []},
        ]

    @pytest.mark.asyncio
    async def test_nested_relation(self, service, storage, make_request):
        storage.fetch.return_value = [
            {"user__id": 1, "projects__id": 100, "project_company__id": 10, "project_company__name": "Acme"},
        ]

        result = await service.get_many(
            make_request(join=[QueryJoin(field="projects"), QueryJoin(field="projects.company")])
        )

        assert result == [{"id": 1, "projects": [{"id": 100, "company": {"id": 10, "name": "Acme"}}]}]

    @pytest.mark.asyncio
    async def test_embedded_columns(self, service, storage, make_request):
        storage.fetch.return_value = [{"user__id": 1, "user__profile.bio": "hello"}]

        result = await service.get_many(make_request())

        assert result == [{"id": 1, "profile": {"bio": "hello"}}]


class TestGetMany:
    """Test pagination of get-many."""

    @pytest.mark.asyncio
    async def test_paginated_envelope(self, service, storage, make_request):
        storage.fetch.return_value = [{"user__id": i} for i in range(11, 21)]
        storage.fetch_value.return_value = 25

        result = await service.get_many(make_request(limit=10, page=2))

        assert isinstance(result, GetManyResponse)
        assert (result.count, result.total, result.page, result.page_count) == (10, 25, 2, 3)
        assert fetched_sql(storage).endswith("LIMIT 10 OFFSET 10")
        count_sql = squash(storage.fetch_value.await_args.args[0])
        assert count_sql.startswith("SELECT count(*) AS")
        assert "FROM (SELECT DISTINCT" in count_sql
        assert '"user"."id"' in count_sql
        assert 'FROM "users" AS "user" WHERE "user"."deleted_at" IS NULL) AS counted' in count_sql
        assert "LIMIT" not in count_sql

    @pytest.mark.asyncio
    async def test_max_limit_caps_limit(self, service, storage, make_request):
        await service.get_many(make_request(options=make_options(max_limit=5), limit=50))

        assert fetched_sql(storage).endswith("LIMIT 5")

    @pytest.mark.asyncio
    async def test_plain_list_without_paging(self, service, storage, make_request):
        storage.fetch.return_value = [{"user__id": 1}]

        assert await service.get_many(make_request()) == [{"id": 1}]
        storage.fetch_value.assert_not_awaited()


class TestGetOne:
    @pytest.mark.asyncio
    async def test_found(self, service, storage, make_request):
        storage.fetch.return_value = [{"user__id": 1, "user__name": "A"}]

        assert await service.get_one(make_request(search=BY_ID)) == {"id": 1, "name": "A"}
        assert "LIMIT" not in fetched_sql(storage)

    @pytest.mark.asyncio
    async def test_not_found(self, service, make_request):
        with pytest.raises(NotFoundError, match="user not found"):
            await service.get_one(make_request(search=BY_ID))


class TestCreate:
    """Test create-one and create-many."""

    @pytest.mark.asyncio
    async def test_create_one_refetches(self, service, storage, make_request, user_entity):
        storage.insert.return_value = {"id": 5, "name": "A", "profile_bio": "x"}
        storage.fetch.return_value = [{"user__id": 5, "user__name": "A"}]

        result = await service.create_one(make_request(), {"name": "A", "profile": {"bio": "x"}})

        storage.insert.assert_awaited_once_with(user_entity, {"name": "A", "profile_bio": "x"})
        assert result == {"id": 5, "name": "A"}
        assert storage.fetch.await_args.args[1] == [5]

    @pytest.mark.asyncio
    async def test_create_one_shallow(self, service, storage, make_request):
        routes = RoutesOptions(create_one_base=RouteOptions(return_shallow=True))
        storage.insert.return_value = {"id": 5, "name": "A"}

        result = await service.create_one(make_request(options=make_options(routes=routes)), {"name": "A"})

        assert result == {"id": 5, "name": "A"}
        storage.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_params_and_auth_persist_override_payload(self, service, storage, make_request, user_entity):
        storage.insert.return_value = {"id": 5}
        request = make_request(
            param_filter=[QueryFilter(field="company_id", operator="$eq", value=7)],
            auth_persist={"is_active": True},
        )
        storage.fetch.return_value = [{"user__id": 5}]

        await service.create_one(request, {"name": "A", "company_id": 1, "is_active": False})

        storage.insert.assert_awaited_once_with(
            user_entity, {"name": "A", "company_id": 7, "is_active": True}
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("dto", [{}, None, [1], {"unknown": 1}])
    async def test_create_one_empty(self, service, make_request, dto):
        with pytest.raises(EmptyPayloadError):
            await service.create_one(make_request(), dto)

    @pytest.mark.asyncio
    async def test_create_many(self, service, storage, make_request, user_entity):
        storage.insert_many.return_value = [{"id": 1, "name": "A"}, {"id": 2, "name": "B"}]

        result = await service.create_many(make_request(), {"bulk": [{"name": "A"}, {"name": "B"}]})

        storage.insert_many.assert_awaited_once_with(user_entity, [{"name": "A"}, {"name": "B"}])
        assert result == [{"id": 1, "name": "A"}, {"id": 2, "name": "B"}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("dto", [{}, {"bulk": []}, {"bulk": "x"}, {"bulk": [None, 1]}])
    async def test_create_many_empty(self, service, make_request, dto):
        with pytest.raises(EmptyPayloadError):
            await service.create_many(make_request(), dto)


class TestUpdateAndReplace:
    """Test update-one and replace-one."""

    @pytest.mark.asyncio
    async def test_update_merges_and_keeps_params(self, service, storage, make_request, user_entity):
        storage.fetch.side_effect = [
            [{"user__id": 1, "user__name": "A", "user__age": 20}],
            [{"user__id": 1, "user__name": "B", "user__age": 20}],
        ]
        storage.update.return_value = {"id": 1, "name": "B", "age": 20}

        result = await service.update_one(
            make_request(search=BY_ID, param_filter=ID_PARAM), {"name": "B", "id": 99}
        )

        storage.update.assert_awaited_once_with(user_entity, {"id": 1}, {"id": 1, "name": "B", "age": 20})
        assert result == {"id": 1, "name": "B", "age": 20}

    @pytest.mark.asyncio
    async def test_update_allows_params_override(self, service, storage, make_request, user_entity):
        routes = RoutesOptions(update_one_base=RouteOptions(allow_params_override=True, return_shallow=True))
        storage.fetch.return_value = [{"user__id": 1}]
        storage.update.return_value = {"id": 99}

        await service.update_one(
            make_request(options=make_options(routes=routes), search=BY_ID, param_filter=ID_PARAM), {"id": 99}
        )

        storage.update.assert_awaited_once_with(user_entity, {"id": 1}, {"id": 99})

    @pytest.mark.asyncio
    async def test_update_not_found(self, service, storage, make_request):
        with pytest.raises(NotFoundError):
            await service.update_one(make_request(search=BY_ID), {"name": "B"})
        storage.update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_ignores_cache(self, service, storage, make_request):
        storage.fetch.return_value = [{"user__id": 1}]
        storage.update.return_value = {"id": 1}

        await service.update_one(make_request(options=make_options(cache=1000), search=BY_ID), {"name": "B"})

        assert all(call.args[2] is None for call in storage.fetch.await_args_list)

    @pytest.mark.asyncio
    async def test_replace_inserts_when_missing(self, service, storage, make_request, user_entity):
        storage.fetch.side_effect = [[], [{"user__id": 1, "user__name": "B"}]]
        storage.insert.return_value = {"id": 1, "name": "B"}

        result = await service.replace_one(make_request(search=BY_ID, param_filter=ID_PARAM), {"name": "B"})

        storage.insert.assert_awaited_once_with(user_entity, {"id": 1, "name": "B"})
        storage.update.assert_not_awaited()
        assert result == {"id": 1, "name": "B"}

    @pytest.mark.asyncio
    async def test_replace_updates_when_found(self, service, storage, make_request, user_entity):
        storage.fetch.side_effect = [[{"user__id": 1, "user__name": "A"}], [{"user__id": 1, "user__name": "B"}]]
        storage.update.return_value = {"id": 1, "name": "B"}

        await service.replace_one(make_request(search=BY_ID, param_filter=ID_PARAM), {"name": "B"})

        storage.update.assert_awaited_once_with(user_entity, {"id": 1}, {"id": 1, "name": "B"})


class TestDeleteAndRecover:
    """Test delete-one and recover-one."""

    @pytest.mark.asyncio
    async def test_hard_delete(self, service, storage, make_request, user_entity):
        storage.fetch.return_value = [{"user__id": 1, "user__name": "A"}]

        result = await service.delete_one(make_request(search=BY_ID))

        storage.delete.assert_awaited_once_with(user_entity, {"id": 1})
        storage.soft_delete.assert_not_awaited()
        assert result is None

    @pytest.mark.asyncio
    async def test_soft_delete_returning_entity(self, service, storage, make_request, user_entity):
        routes = RoutesOptions(delete_one_base=RouteOptions(return_deleted=True))
        storage.fetch.return_value = [{"user__id": 1, "user__name": "A"}]

        result = await service.delete_one(
            make_request(options=make_options(routes=routes, soft_delete=True), search=BY_ID)
        )

        storage.soft_delete.assert_awaited_once_with(user_entity, {"id": 1})
        assert result == {"id": 1, "name": "A"}

    @pytest.mark.asyncio
    async def test_delete_not_found(self, service, storage, make_request):
        with pytest.raises(NotFoundError):
            await service.delete_one(make_request(search=BY_ID))
        storage.delete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recover_reads_deleted_rows(self, service, storage, make_request, user_entity):
        routes = RoutesOptions(recover_one_base=RouteOptions(return_recovered=True))
        storage.fetch.return_value = [{"user__id": 1}]
        storage.recover.return_value = {"id": 1, "deleted_at": None}

        result = await service.recover_one(
            make_request(options=make_options(routes=routes, soft_delete=True), search=BY_ID)
        )

        assert '"user"."deleted_at" IS NULL' not in fetched_sql(storage)
        storage.recover.assert_awaited_once_with(user_entity, {"id": 1})
        assert result == {"id": 1, "deleted_at": None}

    @pytest.mark.asyncio
    async def test_recover_returns_nothing_by_default(self, service, storage, make_request):
        storage.fetch.return_value = [{"user__id": 1}]
        storage.recover = AsyncMock(return_value={"id": 1})

        assert await service.recover_one(make_request(search=BY_ID)) is None
