from textwrap import dedent
from typing import Any
from typing import Optional

import pydantic
from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi
from fastapi.routing import APIRoute
from loguru import logger

from reqflow_api.errors import handle_broad_exceptions
from reqflow_api.errors import handle_pydantic_validation_errors
from reqflow_api.errors import handle_request_flow_errors
from reqflow_api.monitoring.logger import configure_logger
from reqflow_api.monitoring.request_context import RequestContextMiddleware
from reqflow_api.routes.routes_health import ROUTER_HEALTH
from reqflow_api.routes.routes_requests import ROUTER_REQUESTS
from reqflow_api.routes.routes_requests import ROUTER_SETTINGS
from reqflow_api.settings import Settings
from reqflow_api.workflow.collaborators import CoordinatorResolver
from reqflow_api.workflow.collaborators import EventDispatcher
from reqflow_api.workflow.collaborators import InMemoryCoordinatorResolver
from reqflow_api.workflow.collaborators import InMemoryPermissionEngine
from reqflow_api.workflow.collaborators import InMemoryUserDirectory
from reqflow_api.workflow.collaborators import PermissionEngine
from reqflow_api.workflow.collaborators import UserDirectory
from reqflow_api.workflow.db.memory import InMemoryRequestStore
from reqflow_api.workflow.db.memory import InMemorySettingsStore
from reqflow_api.workflow.db.store import RequestStore
from reqflow_api.workflow.db.store import SettingsStore
from reqflow_api.workflow.dispatch import CompositeEventDispatcher
from reqflow_api.workflow.dispatch import LoggingEventDispatcher
from reqflow_api.workflow.dispatch import WebhookEventDispatcher
from reqflow_api.workflow.exceptions import RequestFlowError
from reqflow_api.workflow.models.system_settings import SystemSettings
from reqflow_api.workflow.service import RequestService
from reqflow_api.workflow.settings_service import SystemSettingsService


def build_dispatcher(settings: Settings) -> EventDispatcher:
    """Log every domain event; also POST it to the webhook when one is configured."""
    dispatchers = [LoggingEventDispatcher()]
    if settings.event_webhook_url:
        dispatchers.append(
            WebhookEventDispatcher(settings.event_webhook_url, timeout_seconds=settings.event_webhook_timeout_seconds)
        )
        logger.info("Webhook event dispatch enabled", webhook_url=settings.event_webhook_url)
    return CompositeEventDispatcher(dispatchers)


def default_system_settings(settings: Settings) -> SystemSettings:
    """Seed values served until an administrator stores the settings document."""
    return SystemSettings(
        claim_active_ttl_minutes=settings.claim_active_ttl_minutes,
        claim_hold_ttl_minutes=settings.claim_hold_ttl_minutes,
        conflict_retry_attempts=settings.conflict_retry_attempts,
    )


def wire_services(
    app: FastAPI,
    request_store: RequestStore,
    settings_store: SettingsStore,
) -> RequestService:
    """Build the settings and request services on app.state."""
    settings: Settings = app.state.settings
    settings_service = SystemSettingsService(settings_store, defaults=default_system_settings(settings))
    service = RequestService(
        store=request_store,
        settings_service=settings_service,
        permissions=app.state.permissions,
        coordinators=app.state.coordinators,
        directory=app.state.directory,
        dispatcher=app.state.dispatcher,
    )
    app.state.settings_service = settings_service
    app.state.request_service = service
    return service


def create_app(
    settings: Settings | None = None,
    permissions: Optional[PermissionEngine] = None,
    coordinators: Optional[CoordinatorResolver] = None,
    directory: Optional[UserDirectory] = None,
    dispatcher: Optional[EventDispatcher] = None,
) -> FastAPI:
    """Create a FastAPI application.

    Configuration is loaded directly from environment variables via pydantic-settings.
    The permission engine, coordinator resolver and user directory are external
    collaborators; in-memory implementations are used when none are injected.
    """
    # Initialize settings from environment variables
    settings = settings or Settings()

    configure_logger(level=settings.log_level, enable_json_logs=settings.enable_json_logs)

    logger.info(
        "Configuration loaded successfully",
        service=settings.service_name,
        store_backend=settings.store_backend,
        webhook_enabled=bool(settings.event_webhook_url),
        json_logs=settings.enable_json_logs,
    )

    app = FastAPI(
        title="Event Request Workflow API",
        version="v1",
        description=dedent(
            """
        Approval workflow for event requests: submission, broadcast review by
        eligible coordinators with claim leases, reschedule negotiation and
        administrative reviewer override.

        Callers identify themselves with the `X-Actor-Id` header.
        """
        ),
        generate_unique_id_function=custom_generate_unique_id,
        swagger_ui_parameters={
            "defaultModelsExpandDepth": -1,  # Hide schemas section
            "defaultModelExpandDepth": 1,  # Keep models collapsed if shown
        },
    )
    app.state.settings = settings
    app.state.permissions = permissions or InMemoryPermissionEngine()
    app.state.coordinators = coordinators or InMemoryCoordinatorResolver()
    app.state.directory = directory or InMemoryUserDirectory()
    app.state.dispatcher = dispatcher or build_dispatcher(settings)

    if settings.store_backend == "postgres":
        if not settings.domain_db_connection_string:
            raise ValueError("domain_db_connection_string is required when store_backend is 'postgres'")

        from reqflow_api.workflow.db.pool import DomainDBPool
        from reqflow_api.workflow.db.repository_request import RequestRepository
        from reqflow_api.workflow.db.repository_settings import SystemSettingsRepository

        domain_db_pool = DomainDBPool(
            settings.domain_db_connection_string,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
        )
        app.state.domain_db_pool = domain_db_pool

        # Add startup/shutdown hooks for the request store
        @app.on_event("startup")
        async def startup_workflow():
            """Initialize the database and wire services against it."""
            await domain_db_pool.initialize()
            wire_services(app, RequestRepository(domain_db_pool.pool), SystemSettingsRepository(domain_db_pool.pool))
            logger.success("Request store initialized", backend="postgres")

        @app.on_event("shutdown")
        async def shutdown_workflow():
            """Close database connections."""
            await domain_db_pool.close()
            logger.info("Request store closed")

    else:
        wire_services(app, InMemoryRequestStore(), InMemorySettingsStore())
        logger.info("Using in-memory request store (data is not persisted)")

    # Add request context middleware for tracking who/where requests come from
    app.add_middleware(RequestContextMiddleware)
    app.include_router(ROUTER_HEALTH, prefix="/api")
    app.include_router(ROUTER_REQUESTS, prefix="/api")
    app.include_router(ROUTER_SETTINGS, prefix="/api")

    app.add_exception_handler(
        exc_class_or_status_code=RequestFlowError,
        handler=handle_request_flow_errors,
    )
    app.add_exception_handler(
        exc_class_or_status_code=pydantic.ValidationError,
        handler=handle_pydantic_validation_errors,
    )

    app.middleware("http")(handle_broad_exceptions)

    # Override OpenAPI schema generation to produce a 3.0.3 compatible document
    app.openapi = lambda: custom_openapi_schema(app)

    return app


def custom_generate_unique_id(route: APIRoute):
    """
    Generate prettier `operationId`s in the OpenAPI schema.

    These become the function names in generated client SDKs.
    """
    if route.tags:
        return f"{route.tags[0]}-{route.name}"
    return route.name


def custom_openapi_schema(app: FastAPI) -> dict[str, Any]:
    """
    Generate an OpenAPI 3.0.3 compatible schema.

    Some API gateways only support OpenAPI 3.0.x; this downgrades FastAPI's
    default 3.1.0 output.
    """
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    openapi_schema["openapi"] = "3.0.3"

    def convert_schema_to_3_0(schema: dict[str, Any]) -> None:
        """Recursively convert nullable anyOf and examples from 3.1.0 to 3.0.3."""
        if not isinstance(schema, dict):
            return

        # anyOf: [{type: X}, {type: null}] -> type: X, nullable: true
        if "anyOf" in schema and isinstance(schema["anyOf"], list):
            non_null = [s for s in schema["anyOf"] if not (isinstance(s, dict) and s.get("type") == "null")]
            if len(non_null) == 1 and len(non_null) != len(schema["anyOf"]):
                schema.update(non_null[0])
                schema["nullable"] = True
                del schema["anyOf"]
            else:
                for sub_schema in schema["anyOf"]:
                    convert_schema_to_3_0(sub_schema)

        if "examples" in schema:
            if isinstance(schema["examples"], list) and len(schema["examples"]) > 0:
                schema["example"] = schema["examples"][0]
            del schema["examples"]

        for prop_schema in schema.get("properties", {}).values():
            convert_schema_to_3_0(prop_schema)
        for key in ["items", "additionalProperties"]:
            if isinstance(schema.get(key), dict):
                convert_schema_to_3_0(schema[key])
        for key in ["oneOf", "allOf"]:
            for sub_schema in schema.get(key, []):
                convert_schema_to_3_0(sub_schema)

    for schema in openapi_schema.get("components", {}).get("schemas", {}).values():
        convert_schema_to_3_0(schema)

    app.openapi_schema = openapi_schema
    return app.openapi_schema


if __name__ == "__main__":
    import uvicorn

    app = create_app()
    uvicorn.run(app, host="0.0.0.0", port=8000)
