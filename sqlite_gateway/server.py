"""Gateway server — tool dispatch.

``GatewayServer`` builds and owns every component (engine, pool,
validator, rate limiter, audit trail, executor, introspector, bulk engine
and client registry); nothing is a process-wide singleton.

Request flow for ``call_tool``::

    rate limiter → argument parsing → tool scope gate
        → statement validation → pooled execution → audit record

Tool handlers are ``_tool_<name>`` coroutines.  Blocking engine work runs in
a worker thread via ``asyncio.to_thread``.  Every outcome, including
denials, becomes a ``ToolResult`` plus one audit record; errors are
reported as ``{"error", "message", "details"}`` payloads, never raised to
the transport.
"""

from __future__ import annotations

import asyncio
import functools
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

from pydantic import BaseModel, ValidationError

from sqlite_gateway.config import Settings
from sqlite_gateway.database.bulk import (
    BulkOperationEngine,
    BulkOptions,
    ForeignKeyMapping,
    RelatedTable,
    UpdateEntry,
)
from sqlite_gateway.database.engine import create_gateway_engine, reset_connection_state
from sqlite_gateway.database.executor import Executor
from sqlite_gateway.database.introspector import SchemaIntrospector
from sqlite_gateway.database.pool import ConnectionPool
from sqlite_gateway.database.statements import build_delete, build_insert, build_update
from sqlite_gateway.exceptions import (
    AuthorizationError,
    GatewayError,
    QueryValidationError,
    SecurityError,
    UnknownToolError,
)
from sqlite_gateway.logging import bind_request_context, clear_request_context, get_logger
from sqlite_gateway.protocol import params as p
from sqlite_gateway.security.audit import AuditTrail
from sqlite_gateway.security.models import (
    AuditStatus,
    ClientSession,
    PermissionScope,
    ValidationResult,
)
from sqlite_gateway.security.permissions import ClientRegistry, check_authorization
from sqlite_gateway.security.rate_limiter import ClientRateLimiter
from sqlite_gateway.security.validator import (
    QueryValidator,
    hash_statement,
    is_transaction_control,
)
from sqlite_gateway.tools import TOOLS, TOOLS_BY_NAME

log = get_logger(__name__)

DEFAULT_CLIENT_ID = "default"


@dataclass
class ToolResult:
    content: dict[str, Any]
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content, "is_error": self.is_error}


def error_payload(exc: Exception) -> dict[str, Any]:
    if isinstance(exc, GatewayError):
        return {"error": type(exc).__name__, "message": exc.message, "details": exc.context}
    return {"error": "InternalError", "message": str(exc), "details": {}}


class GatewayServer:
    """Permission-gated tool surface over one SQLite database.

    Usage::

        server = GatewayServer(Settings.load())
        server.start()
        server.set_client_scopes("alice", {PermissionScope.READ, PermissionScope.LIST})
        result = await server.call_tool("sqlite_query", {"query": "SELECT 1"}, "alice")
        server.close()
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()
        db = self.settings.database
        sec = self.settings.security

        self.engine = create_gateway_engine(db)
        self.pool = ConnectionPool.from_engine(
            self.engine,
            max_connections=db.max_connections,
            idle_target=db.idle_target,
            reset=functools.partial(reset_connection_state, config=db),
        )
        self.validator = QueryValidator(max_statement_length=sec.max_statement_length)
        self.rate_limiter = ClientRateLimiter(
            max_requests=sec.rate_limit_per_minute,
            window_seconds=sec.rate_limit_window_seconds,
        )
        self.audit = AuditTrail(
            capacity=sec.audit_capacity,
            audit_file=self.settings.logging.audit_file,
        )
        self.executor = Executor(self.pool)
        self.introspector = SchemaIntrospector(self.pool)
        self.bulk = BulkOperationEngine(self.pool, self.validator)
        self.clients = ClientRegistry()
        self.clients.set_client_scopes(DEFAULT_CLIENT_ID, sec.default_scopes)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.pool.open()
        log.info(
            "gateway_started",
            database=self.settings.database.path,
            read_only=self.settings.database.read_only,
            tools=len(TOOLS),
        )

    def close(self) -> None:
        self.pool.close()
        self.engine.dispose()
        log.info("gateway_stopped")

    async def __aenter__(self) -> "GatewayServer":
        await asyncio.to_thread(self.start)
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await asyncio.to_thread(self.close)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def set_client_scopes(self, client_id: str, scopes: Iterable[PermissionScope]) -> ClientSession:
        return self.clients.set_client_scopes(client_id, scopes)

    def list_tools(self) -> list[dict[str, Any]]:
        return [tool.to_dict() for tool in TOOLS]

    def pool_stats(self) -> dict[str, int]:
        return self.pool.stats()

    async def call_tool(
        self,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        client_id: str = DEFAULT_CLIENT_ID,
    ) -> ToolResult:
        """Run one tool call for *client_id* and audit the outcome."""
        arguments = arguments or {}
        request_id = uuid.uuid4().hex[:12]
        bind_request_context(client_id=client_id, request_id=request_id)
        started = time.perf_counter()
        statement_hash = _hash_arguments(arguments)

        status = AuditStatus.SUCCESS
        error_message: str | None = None
        try:
            self.rate_limiter.check_or_raise(client_id)
            tool = TOOLS_BY_NAME.get(tool_name)
            if tool is None:
                raise UnknownToolError(tool_name)
            params = _parse_arguments(tool.params_model, arguments, tool_name)

            session = self.clients.get_session(client_id)
            decision = check_authorization(session.granted_scopes, tool.required_scopes)
            if not decision.authorized:
                raise AuthorizationError(client_id, decision.missing, tool.required_scopes)

            handler = self._get_handler(tool_name)
            content = await handler(params, session)
            result = ToolResult(content=content)
        except SecurityError as exc:
            status, error_message = AuditStatus.DENIED, exc.message
            log.warning("tool_denied", tool=tool_name, error_type=type(exc).__name__)
            result = ToolResult(content=error_payload(exc), is_error=True)
        except GatewayError as exc:
            status, error_message = AuditStatus.ERROR, exc.message
            log.warning("tool_failed", tool=tool_name, error_type=type(exc).__name__)
            result = ToolResult(content=error_payload(exc), is_error=True)
        except Exception as exc:
            status, error_message = AuditStatus.ERROR, str(exc)
            log.exception("tool_crashed", tool=tool_name)
            result = ToolResult(content=error_payload(exc), is_error=True)
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            if self.settings.security.enable_audit_logging:
                # Blocking file append: run in a worker thread.
                await asyncio.to_thread(
                    self.audit.record,
                    client_id=client_id,
                    operation_type=tool_name,
                    statement_hash=statement_hash,
                    result_status=status,
                    duration_ms=duration_ms,
                    error_message=error_message,
                )
            clear_request_context()

        return result

    # ------------------------------------------------------------------
    # Dispatch helpers
    # ------------------------------------------------------------------

    def _get_handler(
        self, tool_name: str
    ) -> Callable[[Any, ClientSession], Awaitable[dict[str, Any]]]:
        handler = getattr(self, f"_tool_{tool_name.removeprefix('sqlite_')}", None)
        if handler is None:
            raise UnknownToolError(tool_name)
        return handler

    def _validate(
        self,
        session: ClientSession,
        statement: str,
        parameters: Any,
        operation: str,
    ) -> ValidationResult:
        """Validate one statement; raise the matching security error when rejected."""
        result = self.validator.validate(
            statement, parameters, session.granted_scopes, session.client_id
        )
        if result.is_valid:
            return result
        if result.missing_scopes:
            raise AuthorizationError(
                session.client_id,
                result.missing_scopes,
                result.required_scopes,
                errors=result.errors,
            )
        raise QueryValidationError(result.errors, operation)

    async def _execute_validated(
        self, session: ClientSession, statement: str, parameters: Any, operation: str
    ) -> dict[str, Any]:
        checked = self._validate(session, statement, parameters, operation)
        result = await asyncio.to_thread(
            self.executor.execute,
            checked.sanitized_statement,
            checked.sanitized_parameters or [],
        )
        return result.to_dict()

    def _bulk_options(self, options: p.BulkOptionsParams) -> BulkOptions:
        return BulkOptions(
            batch_size=options.batch_size or self.settings.bulk.default_batch_size,
            continue_on_error=options.continue_on_error,
            validate_foreign_keys=options.validate_foreign_keys,
            insert_related_data=options.insert_related_data,
            cascade_delete=options.cascade_delete,
        )

    # ------------------------------------------------------------------
    # Tools: single statements
    # ------------------------------------------------------------------

    async def _tool_query(self, params: p.QueryParams, session: ClientSession) -> dict[str, Any]:
        return await self._execute_validated(session, params.query, params.parameters, "query")

    async def _tool_insert(self, params: p.InsertParams, session: ClientSession) -> dict[str, Any]:
        sql, values = build_insert(params.table, params.data)
        return await self._execute_validated(session, sql, values, "insert")

    async def _tool_update(self, params: p.UpdateParams, session: ClientSession) -> dict[str, Any]:
        sql, values = build_update(params.table, params.data, params.where)
        return await self._execute_validated(session, sql, values, "update")

    async def _tool_delete(self, params: p.DeleteParams, session: ClientSession) -> dict[str, Any]:
        sql, values = build_delete(params.table, params.where)
        return await self._execute_validated(session, sql, values, "delete")

    async def _tool_transaction(
        self, params: p.TransactionParams, session: ClientSession
    ) -> dict[str, Any]:
        statements: list[tuple[str, list[Any]]] = []
        errors: list[str] = []
        required: set[PermissionScope] = {PermissionScope.TRANSACTION}
        missing: set[PermissionScope] = set()
        for index, item in enumerate(params.queries):
            result = self.validator.validate(
                item.query, item.parameters, session.granted_scopes, session.client_id
            )
            required |= result.required_scopes
            missing |= result.missing_scopes
            if not result.is_valid:
                errors.extend(f"Statement {index}: {error}" for error in result.errors)
                continue
            if is_transaction_control(result.sanitized_statement or ""):
                errors.append(
                    f"Statement {index}: Transaction control statements not allowed "
                    "inside a transaction"
                )
                continue
            statements.append((result.sanitized_statement or "", result.sanitized_parameters or []))

        if missing:
            raise AuthorizationError(session.client_id, missing, required, errors=errors)
        if errors:
            raise QueryValidationError(errors, "transaction")

        result = await asyncio.to_thread(self.executor.execute_transaction, statements)
        return result.to_dict()

    # ------------------------------------------------------------------
    # Tools: schema and utility
    # ------------------------------------------------------------------

    async def _tool_schema(self, params: p.SchemaParams, session: ClientSession) -> dict[str, Any]:
        return await asyncio.to_thread(self.introspector.schema_info, params.table)

    async def _tool_tables(self, params: p.TablesParams, session: ClientSession) -> dict[str, Any]:
        return await asyncio.to_thread(self.introspector.list_tables)

    async def _tool_backup(self, params: p.BackupParams, session: ClientSession) -> dict[str, Any]:
        return await asyncio.to_thread(self.executor.backup, params.path)

    # ------------------------------------------------------------------
    # Tools: bulk
    # ------------------------------------------------------------------

    async def _tool_bulk_insert(
        self, params: p.BulkInsertParams, session: ClientSession
    ) -> dict[str, Any]:
        related: dict[str, RelatedTable] | None = None
        if params.related_data:
            related = {}
            for table, data in params.related_data.items():
                if isinstance(data, list):
                    related[table] = RelatedTable(records=[dict(r) for r in data])
                    continue
                mappings = None
                if data.foreign_key_mappings is not None:
                    mappings = {
                        column: ForeignKeyMapping(m.referenced_table, m.referenced_column)
                        for column, m in data.foreign_key_mappings.items()
                    }
                related[table] = RelatedTable(
                    records=[dict(r) for r in data.records],
                    foreign_key_mappings=mappings,
                )

        result = await asyncio.to_thread(
            self.bulk.bulk_insert,
            params.main_table,
            [dict(r) for r in params.records],
            session.granted_scopes,
            related_data=related,
            options=self._bulk_options(params.options),
            client_id=session.client_id,
        )
        return result.to_dict()

    async def _tool_bulk_update(
        self, params: p.BulkUpdateParams, session: ClientSession
    ) -> dict[str, Any]:
        result = await asyncio.to_thread(
            self.bulk.bulk_update,
            params.table,
            [UpdateEntry(dict(u.data), dict(u.where)) for u in params.updates],
            session.granted_scopes,
            options=self._bulk_options(params.options),
            client_id=session.client_id,
        )
        return result.to_dict()

    async def _tool_bulk_delete(
        self, params: p.BulkDeleteParams, session: ClientSession
    ) -> dict[str, Any]:
        result = await asyncio.to_thread(
            self.bulk.bulk_delete,
            params.table,
            [dict(c) for c in params.conditions],
            session.granted_scopes,
            options=self._bulk_options(params.options),
            client_id=session.client_id,
        )
        return result.to_dict()


def _parse_arguments(model: type[BaseModel], arguments: dict[str, Any], tool_name: str) -> Any:
    try:
        return model.model_validate(arguments)
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(part) for part in err['loc']) or 'arguments'}: {err['msg']}"
            for err in exc.errors()
        ]
        raise QueryValidationError(errors, operation=tool_name) from exc


def _hash_arguments(arguments: dict[str, Any]) -> str:
    query = arguments.get("query")
    if isinstance(query, str):
        return hash_statement(query)
    return hash_statement(json.dumps(arguments, sort_keys=True, default=str))
