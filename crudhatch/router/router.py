"""
FastAPI router mounting the CRUD endpoints of one entity.
"""
import functools
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status

from crudhatch.config import CrudConfig
from crudhatch.exceptions import ClientInputError, NotFoundError
from crudhatch.logging_config import get_logger
from crudhatch.options import CrudOptions
from crudhatch.router.interceptor import CrudRequestAssembler, crud_request_dependency
from crudhatch.service.crud_service import CrudRequest, CrudService
from crudhatch.service.pagination import GetManyResponse

logger = get_logger(__name__)


def translate_errors(func):
    """Map crudhatch errors to HTTP errors; everything else propagates."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
        except ClientInputError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    return wrapper


def strip_excluded(data: Any, exclude: List[str]) -> Any:
    """Remove ``exclude`` keys from an entity, a list of entities or a paged envelope."""
    if not exclude or data is None:
        return data
    if isinstance(data, list):
        return [strip_excluded(item, exclude) for item in data]
    if isinstance(data, dict):
        return {key: value for key, value in data.items() if key not in exclude}
    return data


class CrudRouter(APIRouter):
    """
    Mounts get-many, get-one, create-one, create-many, update-one,
    replace-one, delete-one and recover-one for ``service``.

    Args:
        service: CRUD service of the entity
        config: Process-wide configuration
        options: Route owner options, merged over ``config``
        **kwargs: Passed to ``APIRouter`` (prefix, tags, ...)
    """

    def __init__(
        self,
        service: CrudService,
        config: Optional[CrudConfig] = None,
        options: Optional[CrudOptions] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.service = service
        self.config = config or CrudConfig()
        self.options = self.config.merge_options(options)
        self.assembler = CrudRequestAssembler(self.config)

        logger.info("Initializing CrudRouter for entity: %s", service.alias)
        self._mount()

    @property
    def one_path(self) -> str:
        names = [
            name
            for name, option in self.options.params.items()
            if option.primary and not option.disabled
        ]
        return "/" + "/".join(f"{{{name}}}" for name in names)

    def _dependency(self, action: str):
        return Depends(crud_request_dependency(self.assembler, self.options, action))

    def _mount(self) -> None:
        enabled = self.options.routes.enabled()
        one = self.one_path
        entity = self.service.alias

        routes = [
            ("create_many_base", "/bulk", self.create_many, "POST", status.HTTP_201_CREATED,
             f"Create multiple {entity}"),
            ("get_many_base", "/", self.get_many, "GET", status.HTTP_200_OK,
             f"Retrieve multiple {entity}"),
            ("get_one_base", one, self.get_one, "GET", status.HTTP_200_OK,
             f"Retrieve a single {entity}"),
            ("create_one_base", "/", self.create_one, "POST", status.HTTP_201_CREATED,
             f"Create a single {entity}"),
            ("update_one_base", one, self.update_one, "PATCH", status.HTTP_200_OK,
             f"Update a single {entity}"),
            ("replace_one_base", one, self.replace_one, "PUT", status.HTTP_200_OK,
             f"Replace a single {entity}"),
            ("delete_one_base", one, self.delete_one, "DELETE", status.HTTP_200_OK,
             f"Delete a single {entity}"),
            ("recover_one_base", f"{one}/recover", self.recover_one, "PATCH", status.HTTP_200_OK,
             f"Recover a single {entity}"),
        ]

        with_body = {"create_one_base", "create_many_base", "update_one_base", "replace_one_base"}

        for name, path, endpoint, method, status_code, summary in routes:
            if name not in enabled:
                continue
            route_options = getattr(self.options.routes, name)
            self.add_api_route(
                path,
                self._bind(endpoint, name, name in with_body),
                methods=[method],
                status_code=status_code,
                summary=summary,
                dependencies=list(route_options.dependencies),
                name=f"{entity}_{name}",
            )

    def _bind(self, endpoint, action: str, has_body: bool):
        dependency = self._dependency(action)

        if has_body:
            async def with_body(crud_request: CrudRequest = dependency, body: Dict[str, Any] = Body(...)):
                return await endpoint(crud_request, body)

            return with_body

        async def without_body(crud_request: CrudRequest = dependency):
            return await endpoint(crud_request)

        return without_body

    def _shape(self, req: CrudRequest, data: Any) -> Any:
        exclude = req.parsed.transform_options.get("exclude") or []
        if isinstance(data, GetManyResponse):
            envelope = data.model_dump(by_alias=True)
            envelope["data"] = strip_excluded(envelope["data"], exclude)
            return envelope
        return strip_excluded(data, exclude)

    @translate_errors
    async def get_many(self, req: CrudRequest):
        return self._shape(req, await self.service.get_many(req))

    @translate_errors
    async def get_one(self, req: CrudRequest):
        return self._shape(req, await self.service.get_one(req))

    @translate_errors
    async def create_one(self, req: CrudRequest, body: Dict[str, Any]):
        return self._shape(req, await self.service.create_one(req, body))

    @translate_errors
    async def create_many(self, req: CrudRequest, body: Dict[str, Any]):
        return self._shape(req, await self.service.create_many(req, body))

    @translate_errors
    async def update_one(self, req: CrudRequest, body: Dict[str, Any]):
        return self._shape(req, await self.service.update_one(req, body))

    @translate_errors
    async def replace_one(self, req: CrudRequest, body: Dict[str, Any]):
        return self._shape(req, await self.service.replace_one(req, body))

    @translate_errors
    async def delete_one(self, req: CrudRequest):
        return self._shape(req, await self.service.delete_one(req))

    @translate_errors
    async def recover_one(self, req: CrudRequest):
        return self._shape(req, await self.service.recover_one(req))
