"""
Test configuration and fixtures for the crudhatch test suite.
Provides entity metadata for a small user/company/project schema and a
storage double recording every statement it is asked to run.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from crudhatch.config import CrudConfig
from crudhatch.options import CrudOptions, JoinOption, QueryOptions
from crudhatch.request.models import ParsedRequest
from crudhatch.service.crud_service import CrudRequest, CrudService
from crudhatch.service.metadata import (
    ColumnMetadata,
    EntityMetadata,
    MetadataRegistry,
    RelationMetadata,
)
from crudhatch.service.relations import RelationRegistry
from crudhatch.sql.dialects import PostgresDialect


def make_column(name, type="text", database_name=None, **kwargs):
    return ColumnMetadata(
        property_path=name,
        database_name=database_name or name,
        type=type,
        **kwargs,
    )


@pytest.fixture
def company_entity():
    """Companies: no soft delete, no outgoing relations."""
    return EntityMetadata(
        name="company",
        table="companies",
        columns=[
            make_column("id", "int4", is_primary=True, nullable=False),
            make_column("name"),
            make_column("domain"),
        ],
    )


@pytest.fixture
def project_entity():
    return EntityMetadata(
        name="project",
        table="projects",
        columns=[
            make_column("id", "int4", is_primary=True, nullable=False),
            make_column("name"),
            make_column("user_id", "int4"),
            make_column("company_id", "int4"),
        ],
        relations=[
            RelationMetadata(
                property_name="company",
                target="company",
                source_column="company_id",
                target_column="id",
            )
        ],
    )


@pytest.fixture
def user_entity():
    """Users: soft-deletable, embedded ``profile.bio``, array ``tags``."""
    return EntityMetadata(
        name="user",
        table="users",
        columns=[
            make_column("id", "int4", is_primary=True, nullable=False),
            make_column("name"),
            make_column("email"),
            make_column("age", "int4"),
            make_column("is_active", "bool"),
            make_column("company_id", "int4"),
            make_column("tags", "text", is_array=True),
            make_column("profile.bio", "text", database_name="profile_bio"),
            make_column("deleted_at", "timestamptz", is_delete_date=True),
        ],
        relations=[
            RelationMetadata(
                property_name="company",
                target="company",
                source_column="company_id",
                target_column="id",
            ),
            RelationMetadata(
                property_name="projects",
                target="project",
                source_column="id",
                target_column="user_id",
                many=True,
            ),
        ],
    )


@pytest.fixture
def metadata(user_entity, company_entity, project_entity):
    return MetadataRegistry([user_entity, company_entity, project_entity])


@pytest.fixture
def relations(user_entity, metadata):
    return RelationRegistry(user_entity, metadata)


@pytest.fixture
def storage():
    """Storage double speaking PostgreSQL; every method is an AsyncMock."""
    storage = MagicMock()
    storage.dialect = PostgresDialect()
    storage.fetch = AsyncMock(return_value=[])
    storage.fetch_value = AsyncMock(return_value=0)
    storage.insert = AsyncMock()
    storage.insert_many = AsyncMock(return_value=[])
    storage.update = AsyncMock()
    storage.delete = AsyncMock()
    storage.soft_delete = AsyncMock()
    storage.recover = AsyncMock()
    return storage


@pytest.fixture
def service(user_entity, storage, metadata):
    return CrudService(user_entity, storage, metadata)


@pytest.fixture
def join_options():
    return {
        "company": JoinOption(),
        "projects": JoinOption(),
        "projects.company": JoinOption(alias="project_company"),
    }


@pytest.fixture
def crud_options(join_options):
    return CrudConfig().merge_options(CrudOptions(query=QueryOptions(join=join_options)))


@pytest.fixture
def make_request(crud_options):
    """Build a ``CrudRequest`` from ``ParsedRequest`` keyword arguments."""

    def factory(options=None, **parsed):
        return CrudRequest(parsed=ParsedRequest(**parsed), options=options or crud_options)

    return factory
