"""
Built-in step executors.

start         - exposes the run input (JSON strings are parsed)
user-approval - suspends until resumed; the resume value becomes its output
transform     - evaluates a sandboxed expression over lastOutput
set-state     - writes one typed variable
http          - performs an HTTP request with httpx

``agent`` and ``tool`` steps are host-specific and must be registered by
the application.
"""

import base64
import json
import logging
from typing import Any

import httpx

from workflow_engine.errors import StepExecutionError
from workflow_engine.graph.routing import build_eval_context
from workflow_engine.graph.safe_eval import safe_eval
from workflow_engine.graph.step import StepContext, StepOutput, Suspend
from workflow_engine.graph.templating import substitute_in_value, substitute_variables
from workflow_engine.graph.workflow import NodeKind

logger = logging.getLogger(__name__)


def parse_run_input(value: Any) -> Any:
    """JSON strings become objects; anything else is returned unchanged."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


async def start_step(ctx: StepContext) -> StepOutput:
    return StepOutput(value=parse_run_input(ctx.variables.get("input")))


async def approval_step(ctx: StepContext) -> StepOutput | Suspend:
    if ctx.is_resume:
        value = ctx.resume_value if ctx.resume_value is not None else {"approved": True}
        logger.info(f"📥 Approval {ctx.node.id} resumed")
        return StepOutput(value=value)

    raw_message = ctx.node_config.get("approvalMessage") or "Approval required"
    message = ctx.render(raw_message)
    return Suspend(kind="approval", reason=message, resume_hint={"approved": True})


class TransformStep:
    """Evaluates ``transformScript`` with ``input``/``lastOutput`` bound to the previous output."""

    async def execute(self, ctx: StepContext) -> StepOutput:
        config = ctx.node_config
        script = config.get("transformScript") or config.get("transformation")
        last_output = ctx.variables.get("lastOutput")
        if not script or not str(script).strip():
            logger.warning(f"⚠ Transform {ctx.node.id} has no script, passing input through")
            return StepOutput(value=last_output if last_output is not None else {})

        context = build_eval_context(ctx.state)
        context["input"] = last_output
        return StepOutput(value=safe_eval(str(script), context))


class SetStateStep:
    """Writes ``stateKey`` with ``stateValue`` coerced to ``valueType``."""

    async def execute(self, ctx: StepContext) -> StepOutput:
        config = ctx.node_config
        key = config.get("stateKey") or "variable"
        value_type = config.get("valueType") or "string"
        raw = config.get("stateValue")
        if isinstance(raw, str):
            raw = ctx.render(raw)

        try:
            value = self._coerce(raw, value_type, ctx)
        except (TypeError, ValueError) as e:
            raise StepExecutionError(
                f"Failed to set state variable '{key}': {e}", node_id=ctx.node.id, cause=e
            ) from e

        logger.info(f"🔧 Set state {key} = {value!r}")
        return StepOutput(
            value={"key": key, "value": value, "valueType": value_type, "stateUpdated": True},
            variables={key: value},
        )

    def _coerce(self, raw: Any, value_type: str, ctx: StepContext) -> Any:
        if value_type == "number":
            if isinstance(raw, bool):
                raise ValueError(f'Cannot convert "{raw}" to number')
            number = float(raw)
            return int(number) if number.is_integer() else number
        if value_type == "boolean":
            if isinstance(raw, bool):
                return raw
            return str(raw).strip().lower() in ("true", "1", "yes")
        if value_type == "json":
            if not isinstance(raw, str):
                return raw
            try:
                return json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON: {e.msg}") from e
        if value_type == "expression":
            if raw is None:
                return None
            return safe_eval(str(raw), build_eval_context(ctx.state))
        return raw


class HTTPStep:
    """Performs the request described by ``httpUrl``/``httpMethod``/``httpHeaders``/``httpBody``."""

    BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 30.0):
        self._client = client
        self.timeout = timeout

    def _headers(self, ctx: StepContext) -> dict[str, str]:
        config = ctx.node_config
        headers: dict[str, str] = {}
        raw_headers = config.get("httpHeaders") or []
        if isinstance(raw_headers, dict):
            raw_headers = [{"key": k, "value": v} for k, v in raw_headers.items()]
        for header in raw_headers:
            if header.get("key") and header.get("value"):
                headers[header["key"]] = substitute_variables(str(header["value"]), ctx.state)

        auth_type = config.get("httpAuthType")
        token = config.get("httpAuthToken")
        if token:
            token = substitute_variables(str(token), ctx.state)
            if auth_type == "bearer":
                headers["Authorization"] = f"Bearer {token}"
            elif auth_type == "api-key":
                headers["X-API-Key"] = token
            elif auth_type == "basic":
                headers["Authorization"] = f"Basic {base64.b64encode(token.encode()).decode()}"
        return headers

    async def execute(self, ctx: StepContext) -> StepOutput:
        config = ctx.node_config
        url = substitute_variables(str(config.get("httpUrl") or ""), ctx.state)
        method = str(config.get("httpMethod") or "GET").upper()
        if not url:
            raise StepExecutionError("HTTP node has no URL", node_id=ctx.node.id)

        headers = self._headers(ctx)
        content: str | None = None
        body = config.get("httpBody")
        if method in self.BODY_METHODS and body:
            if isinstance(body, str):
                content = substitute_variables(body, ctx.state)
            else:
                content = json.dumps(substitute_in_value(body, ctx.state))
                headers.setdefault("Content-Type", "application/json")

        logger.info(f"🌐 HTTP {method} {url}")
        if self._client is not None:
            response = await self._client.request(method, url, headers=headers, content=content)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, headers=headers, content=content)

        try:
            data: Any = response.json()
        except ValueError:
            data = response.text

        if response.is_error:
            raise StepExecutionError(
                f"HTTP {response.status_code}: {response.reason_phrase}", node_id=ctx.node.id
            )

        return StepOutput(
            value={
                "status": response.status_code,
                "statusText": response.reason_phrase,
                "headers": dict(response.headers),
                "data": data,
                "url": url,
                "method": method,
            }
        )


def register_builtin_steps(registry: Any, http_client: httpx.AsyncClient | None = None) -> None:
    registry.register(NodeKind.START, start_step)
    registry.register(NodeKind.USER_APPROVAL, approval_step)
    registry.register(NodeKind.TRANSFORM, TransformStep())
    registry.register(NodeKind.SET_STATE, SetStateStep())
    registry.register(NodeKind.HTTP, HTTPStep(client=http_client))
