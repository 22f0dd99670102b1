"""Capability execution.

execute() validates params against the input schema, checks preconditions,
dispatches by executor kind and always returns an ExecutionResult. Handler
failures are reported by raising CapabilityExecutionError; anything else a
handler raises becomes a non-recoverable EXECUTION_ERROR.

Script capabilities never run stored text. A script resource names a handler
id, and only handlers registered with register_script() can run. Local
handlers load and render their capability's other resources through
ExecutionContext.resources.
"""

import asyncio
import copy
import logging
import os
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

import httpx

from concierge.skills import errors
from concierge.skills.constraints import FieldRef, parse_condition
from concierge.skills.context import SessionContextStore
from concierge.skills.errors import CapabilityExecutionError, InvalidTransitionError
from concierge.skills.registry import CapabilityRegistry
from concierge.skills.resources import ResourceAccess, ResourceManager
from concierge.skills.types import (
    ApiEndpoint,
    CapabilitySpec,
    CapabilityStatus,
    ConstraintKind,
    ExecutionError,
    ExecutionResult,
    ExecutionStatus,
    ExecutorKind,
    FieldSchema,
    FieldType,
    HistoryEntry,
    ViolationPolicy,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_DELAY_MS = 1000
DEFAULT_API_BASE_URL = "http://localhost:8000"

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


@dataclass(slots=True)
class HandlerResult:
    """Richer return value for handlers that want to set the message or warnings."""

    data: Any = None
    message: str = ""
    warnings: list[str] = field(default_factory=list)
    # Part of the work was done; the rest needs attention
    partial: bool = False


@dataclass(slots=True)
class ExecutionContext:
    """What a local handler can see besides its params."""

    capability: CapabilitySpec
    today: date
    session_id: str | None = None
    user_input: str = ""
    # Loads and renders this capability's resources
    resources: ResourceAccess | None = None


LocalHandler = Callable[[dict[str, Any], ExecutionContext], Awaitable[Any]]
ScriptHandler = Callable[[dict[str, Any]], Awaitable[Any]]


def _is_missing(value: Any) -> bool:
    return value is None or value == "" or value == []


def _type_problem(schema: FieldSchema, value: Any) -> str | None:
    name = schema.name
    match schema.type:
        case FieldType.STRING:
            ok = isinstance(value, str)
        case FieldType.NUMBER:
            ok = isinstance(value, int | float) and not isinstance(value, bool)
        case FieldType.BOOLEAN:
            ok = isinstance(value, bool)
        case FieldType.ARRAY:
            ok = isinstance(value, list | tuple)
        case FieldType.OBJECT:
            ok = isinstance(value, dict)
        case FieldType.DATE:
            if not isinstance(value, str) or not _DATE_RE.match(value):
                return f"{name} must be a date (YYYY-MM-DD)"
            try:
                date.fromisoformat(value)
            except ValueError:
                return f"{name} is not a valid date"
            return None
        case FieldType.TIME:
            match_ = _TIME_RE.match(value) if isinstance(value, str) else None
            if not match_ or int(match_.group(1)) > 23 or int(match_.group(2)) > 59:
                return f"{name} must be a time (HH:MM)"
            return None
        case FieldType.DATETIME:
            try:
                datetime.fromisoformat(value)
            except (TypeError, ValueError):
                return f"{name} must be a date and time (YYYY-MM-DDTHH:MM)"
            return None
    return None if ok else f"{name} must be of type {schema.type.value}"


def _field_problems(schema: FieldSchema, value: Any) -> list[str]:
    if problem := _type_problem(schema, value):
        return [problem]
    problems = []
    name = schema.name
    if schema.enum and isinstance(value, str) and value not in schema.enum:
        problems.append(f"{name} must be one of: {', '.join(schema.enum)}")
    v = schema.validation
    if v is None:
        return problems
    if schema.type == FieldType.NUMBER:
        if v.min is not None and value < v.min:
            problems.append(f"{name} must be at least {v.min:g}")
        if v.max is not None and value > v.max:
            problems.append(f"{name} must be at most {v.max:g}")
    if isinstance(value, str | list | tuple):
        if v.min_length is not None and len(value) < v.min_length:
            problems.append(f"{name} must have at least {v.min_length} characters or items")
        if v.max_length is not None and len(value) > v.max_length:
            problems.append(f"{name} must have at most {v.max_length} characters or items")
    if v.pattern and isinstance(value, str) and not re.fullmatch(v.pattern, value):
        problems.append(f"{name} does not match the expected format")
    return problems


def validate_params(spec: CapabilitySpec, params: dict[str, Any]) -> tuple[list[str], list[str]]:
    """Check params against the input schema.

    Returns:
        (problems, offending field names); both empty when valid. Every
        problem is reported, not just the first.
    """
    problems: list[str] = []
    fields: list[str] = []
    for name in spec.required_fields:
        if _is_missing(params.get(name)):
            problems.append(f"{name} is required")
            fields.append(name)
    for schema in spec.input_schema:
        value = params.get(schema.name)
        if _is_missing(value):
            continue
        found = _field_problems(schema, value)
        problems.extend(found)
        if found and schema.name not in fields:
            fields.append(schema.name)
    return problems, fields


def apply_defaults(spec: CapabilitySpec, params: dict[str, Any]) -> dict[str, Any]:
    merged = dict(params)
    for schema in spec.input_schema:
        if _is_missing(merged.get(schema.name)) and schema.has_default:
            merged[schema.name] = copy.deepcopy(schema.default)
    return merged


class CapabilityExecutor:
    """Runs capabilities and records every outcome."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        store: SessionContextStore | None = None,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS,
        api_base_url: str = DEFAULT_API_BASE_URL,
        http_client: httpx.AsyncClient | None = None,
        resources: ResourceManager | None = None,
    ):
        self._registry = registry
        self._resources = resources if resources is not None else ResourceManager()
        self._store = store
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._retry_delay_ms = retry_delay_ms
        self._api_base_url = api_base_url.rstrip("/")
        self._http_client = http_client
        self._handlers: dict[str, LocalHandler] = {}
        self._scripts: dict[str, ScriptHandler] = {}

    def register_handler(self, name: str, handler: LocalHandler) -> None:
        """Register the in-process handler for a local capability."""
        self._handlers[name] = handler

    def register_script(self, handler_id: str, handler: ScriptHandler) -> None:
        """Register a script handler that script resources can refer to by id."""
        self._scripts[handler_id] = handler

    def has_handler(self, name: str) -> bool:
        return name in self._handlers

    def has_script(self, handler_id: str) -> bool:
        return handler_id in self._scripts

    @property
    def resources(self) -> ResourceManager:
        return self._resources

    async def execute(
        self,
        name: str,
        params: dict[str, Any],
        *,
        session_id: str | None = None,
        user_input: str = "",
        today: date | None = None,
    ) -> ExecutionResult:
        """Execute a capability once. Never raises."""
        start_time = time.monotonic()
        self._mark(session_id, name, CapabilityStatus.EXECUTING)
        try:
            result = await self._run(name, dict(params), session_id, user_input, today)
        except Exception as e:
            logger.exception("capability_execution_failed", extra={"capability.name": name})
            result = ExecutionResult(
                status=ExecutionStatus.ERROR,
                capability_name=name,
                params=dict(params),
                error=ExecutionError(errors.EXECUTION_ERROR, str(e)),
            )
        result.execution_time_ms = int((time.monotonic() - start_time) * 1000)
        self._record(session_id, result, user_input)
        return result

    async def execute_with_retry(
        self,
        name: str,
        params: dict[str, Any],
        *,
        session_id: str | None = None,
        user_input: str = "",
        today: date | None = None,
    ) -> ExecutionResult:
        """Execute, retrying recoverable failures with linear backoff.

        Deterministic failures (bad params, failed preconditions, conflicts)
        would fail the same way again, so they return immediately. Any other
        code a handler marks recoverable is retried, including its own codes.
        """
        attempt = 0
        while True:
            result = await self.execute(
                name, params, session_id=session_id, user_input=user_input, today=today
            )
            if result.ok or not self.is_retryable(result) or attempt >= self._max_retries:
                return result
            attempt += 1
            delay = self._retry_delay_ms * attempt / 1000
            logger.warning(
                "capability_retry",
                extra={
                    "capability.name": name,
                    "retry.attempt": attempt,
                    "retry.delay_s": delay,
                    "error.code": result.error.code if result.error else None,
                },
            )
            await asyncio.sleep(delay)

    @staticmethod
    def is_retryable(result: ExecutionResult) -> bool:
        error = result.error
        return (
            error is not None
            and error.recoverable
            and error.code not in errors.DETERMINISTIC_CODES
        )

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    def _today(self, session_id: str | None, today: date | None) -> date:
        if today is not None:
            return today
        if self._store is not None and session_id is not None:
            context = self._store.get(session_id)
            if context is not None:
                return context.current_date
        return date.today()

    async def _run(
        self,
        name: str,
        params: dict[str, Any],
        session_id: str | None,
        user_input: str,
        today: date | None,
    ) -> ExecutionResult:
        if not self._registry.has(name):
            return _failure(name, params, errors.SKILL_NOT_FOUND, f"Capability '{name}' is not registered")
        if not self._registry.is_enabled(name):
            return _failure(name, params, errors.SKILL_DISABLED, f"Capability '{name}' is disabled")

        spec = self._registry.get(name)
        day = self._today(session_id, today)
        params = apply_defaults(spec, params)

        problems, fields = validate_params(spec, params)
        if problems:
            return _failure(
                name,
                params,
                errors.INVALID_PARAMS,
                "; ".join(problems),
                recoverable=True,
                fields=fields,
                details={"problems": problems},
            )

        params, warnings, failure = self._check_preconditions(spec, params, day)
        if failure is not None:
            return failure

        context = ExecutionContext(
            spec, day, session_id, user_input, self._resources.for_capability(spec)
        )
        try:
            output = await self._dispatch(spec, params, context)
        except CapabilityExecutionError as e:
            return _failure(
                name,
                params,
                e.code,
                str(e),
                recoverable=e.recoverable,
                fields=e.fields,
                details=e.details,
                warnings=warnings,
            )
        except TimeoutError:
            return _failure(
                name,
                params,
                errors.EXECUTION_ERROR,
                f"'{name}' did not finish within {self._timeout:g}s",
                recoverable=True,
                warnings=warnings,
            )
        except Exception as e:
            logger.exception("capability_handler_failed", extra={"capability.name": name})
            return _failure(name, params, errors.EXECUTION_ERROR, str(e), warnings=warnings)

        result = _success(name, params, output, warnings)
        return self._check_postconditions(spec, result, day)

    def _check_preconditions(
        self, spec: CapabilitySpec, params: dict[str, Any], today: date
    ) -> tuple[dict[str, Any], list[str], ExecutionResult | None]:
        """Evaluate preconditions and invariants before dispatch.

        reject and ask_user violations fail the call together; warn adds a
        warning; auto_fix resets the left-hand field to its default and
        checks again, failing like reject when there is no default.
        """
        warnings: list[str] = []
        violations: list[str] = []
        rule_ids: list[str] = []
        fields: list[str] = []
        for rule in spec.constraints:
            if rule.kind == ConstraintKind.POSTCONDITION:
                continue
            comparison = parse_condition(rule.condition)
            if comparison.evaluate(params, today) is not False:
                continue
            message = rule.message or rule.description or f"{rule.condition} does not hold"

            if rule.on_violation == ViolationPolicy.WARN:
                warnings.append(message)
                continue
            if rule.on_violation == ViolationPolicy.AUTO_FIX and isinstance(comparison.left, FieldRef):
                schema = spec.get_field(comparison.left.name)
                if schema is not None and schema.has_default:
                    fixed = params | {schema.name: copy.deepcopy(schema.default)}
                    if comparison.evaluate(fixed, today) is not False:
                        params = fixed
                        warnings.append(f"{message} ({schema.name} reset to {schema.default})")
                        continue

            violations.append(message)
            rule_ids.append(rule.id)
            fields.extend(f for f in comparison.fields if f not in fields)

        if not violations:
            return params, warnings, None
        return (
            params,
            warnings,
            _failure(
                spec.name,
                params,
                errors.PRECONDITION_FAILED,
                "; ".join(violations),
                recoverable=True,
                fields=fields,
                details={"violations": rule_ids},
                warnings=warnings,
            ),
        )

    def _check_postconditions(
        self, spec: CapabilitySpec, result: ExecutionResult, today: date
    ) -> ExecutionResult:
        """Postconditions see params plus the handler's data when it is a dict."""
        rules = [c for c in spec.constraints if c.kind == ConstraintKind.POSTCONDITION]
        if not rules:
            return result
        values = result.params | (result.data if isinstance(result.data, dict) else {})
        for rule in rules:
            if parse_condition(rule.condition).evaluate(values, today) is not False:
                continue
            message = rule.message or rule.description or f"{rule.condition} does not hold"
            if rule.on_violation == ViolationPolicy.WARN:
                result.warnings.append(message)
                continue
            return _failure(
                spec.name,
                result.params,
                errors.VALIDATION_ERROR,
                message,
                recoverable=True,
                details={"violations": [rule.id], "data": result.data},
                warnings=result.warnings,
            )
        return result

    async def _dispatch(
        self, spec: CapabilitySpec, params: dict[str, Any], context: ExecutionContext
    ) -> Any:
        match spec.executor_kind:
            case ExecutorKind.LOCAL:
                return await self._run_local(spec, params, context)
            case ExecutorKind.API:
                return await self._run_api(spec, params)
            case ExecutorKind.SCRIPT:
                return await self._run_script(spec, params)

    async def _run_local(
        self, spec: CapabilitySpec, params: dict[str, Any], context: ExecutionContext
    ) -> Any:
        handler = self._handlers.get(spec.name)
        if handler is None:
            logger.info("capability_simulated", extra={"capability.name": spec.name})
            return HandlerResult(
                data={"simulated": True, "params": params},
                message=f"Simulated {spec.name.replace('_', ' ')}: no handler is registered, nothing was changed.",
            )
        async with asyncio.timeout(self._timeout):
            return await handler(copy.deepcopy(params), context)

    async def _run_script(self, spec: CapabilitySpec, params: dict[str, Any]) -> Any:
        resource = spec.script_resource()
        handler = self._scripts.get(resource.handler) if resource and resource.handler else None
        if handler is None:
            raise CapabilityExecutionError(
                errors.EXECUTION_ERROR,
                f"No script handler is registered for '{spec.name}'",
            )
        # Scripts get a copy of the validated params and nothing else
        return await asyncio.wait_for(handler(copy.deepcopy(params)), timeout=self._timeout)

    def _api_request(
        self, spec: CapabilitySpec, params: dict[str, Any]
    ) -> tuple[ApiEndpoint, str, dict[str, str], dict[str, Any]]:
        endpoint = spec.api or ApiEndpoint()
        path = endpoint.path or f"/skills/{spec.name}/execute"
        url = path if path.startswith(("http://", "https://")) else f"{self._api_base_url}{path}"
        headers = {"Content-Type": "application/json", **endpoint.headers}
        if endpoint.auth_env and (token := os.environ.get(endpoint.auth_env)):
            headers["Authorization"] = f"Bearer {token}"
        mapped = {endpoint.param_mapping.get(k, k): v for k, v in params.items()}
        return endpoint, url, headers, mapped

    async def _run_api(self, spec: CapabilitySpec, params: dict[str, Any]) -> Any:
        endpoint, url, headers, mapped = self._api_request(spec, params)
        timeout = endpoint.timeout or self._timeout
        method = endpoint.method.upper()
        request: dict[str, Any] = {"headers": headers, "timeout": timeout}
        if method == "GET":
            request["params"] = mapped
        else:
            request["json"] = {"params": mapped}

        try:
            if self._http_client is not None:
                response = await self._http_client.request(method, url, **request)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.request(method, url, **request)
        except httpx.TimeoutException as e:
            raise CapabilityExecutionError(
                errors.EXECUTION_ERROR,
                f"Request to {url} timed out",
                recoverable=True,
                details={"url": url},
            ) from e
        except httpx.HTTPError as e:
            raise CapabilityExecutionError(
                errors.EXECUTION_ERROR,
                f"Request to {url} failed: {e}",
                recoverable=True,
                details={"url": url},
            ) from e

        if response.is_success:
            try:
                return response.json()
            except ValueError:
                return response.text

        status = response.status_code
        details = {"status": status, "body": response.text[:2000]}
        logger.warning(
            "capability_api_error",
            extra={"capability.name": spec.name, "http.status": status},
        )
        if status in (401, 403):
            raise CapabilityExecutionError(
                errors.PERMISSION_DENIED, f"Not allowed ({status})", details=details
            )
        if status in (404, 409, 423):
            raise CapabilityExecutionError(
                errors.RESOURCE_UNAVAILABLE,
                f"Resource unavailable ({status})",
                recoverable=True,
                details=details,
            )
        raise CapabilityExecutionError(
            errors.EXECUTION_ERROR,
            f"Request failed with status {status}",
            recoverable=status >= 500,
            details=details,
        )

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    def _mark(self, session_id: str | None, name: str, status: CapabilityStatus) -> None:
        """Move the session's active capability, if it is ``name``, to ``status``."""
        if self._store is None or session_id is None:
            return
        context = self._store.get(session_id)
        if context is None or context.active_capability is None:
            return
        active = context.active_capability
        if active.capability_name != name or active.status == status:
            return
        try:
            self._store.transition(session_id, status)
        except InvalidTransitionError as e:
            logger.warning(
                "execution_status_not_updated",
                extra={"session.id": session_id, "capability.name": name, "error.message": str(e)},
            )

    def _record(self, session_id: str | None, result: ExecutionResult, user_input: str) -> None:
        name = result.capability_name
        self._mark(
            session_id,
            name,
            CapabilityStatus.COMPLETED if result.ok else CapabilityStatus.FAILED,
        )
        if self._store is not None and session_id is not None and self._store.get(session_id):
            self._store.add_history(
                session_id,
                HistoryEntry(name, dict(result.params), result, user_input),
            )
        if self._registry.has(name):
            self._registry.record_execution(name, result.status)

        extra = {
            "capability.name": name,
            "execution.status": result.status.value,
            "duration_ms": result.execution_time_ms,
        }
        if result.error is not None:
            extra["error.code"] = result.error.code
            extra["error.recoverable"] = result.error.recoverable
        logger.info("capability_executed", extra=extra)


def _failure(
    name: str,
    params: dict[str, Any],
    code: str,
    message: str,
    *,
    recoverable: bool = False,
    fields: tuple[str, ...] | list[str] = (),
    details: dict[str, Any] | None = None,
    warnings: list[str] | None = None,
) -> ExecutionResult:
    return ExecutionResult(
        status=ExecutionStatus.ERROR,
        capability_name=name,
        params=params,
        error=ExecutionError(code, message, recoverable, tuple(fields), details or {}),
        message=message,
        warnings=list(warnings or []),
    )


def _success(
    name: str, params: dict[str, Any], output: Any, warnings: list[str]
) -> ExecutionResult:
    if isinstance(output, HandlerResult):
        return ExecutionResult(
            status=ExecutionStatus.PARTIAL_SUCCESS if output.partial else ExecutionStatus.SUCCESS,
            capability_name=name,
            params=params,
            data=output.data,
            message=output.message,
            warnings=warnings + list(output.warnings),
        )
    return ExecutionResult(
        status=ExecutionStatus.SUCCESS,
        capability_name=name,
        params=params,
        data=output,
        warnings=list(warnings),
    )
