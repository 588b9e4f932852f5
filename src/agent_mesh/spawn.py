"""Subagent spawning: validation, depth guard, callsigns, supervision, and aggregation.

Each request moves through ``validated -> depth checked -> launching -> running ->
completed | failed``. Child failures come back as ``SpawnResult.error``; only
request validation, the depth guard, and the one-run-at-a-time gate raise.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import os
import re
import shutil
import tempfile
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Sequence, TypeVar, Union

import structlog

from .config import Settings, get_settings
from .errors import ALREADY_RUNNING, INVALID_PARAMS, MAX_DEPTH_REACHED, TOO_MANY_TASKS, CoordinationError
from .models import SpawnResult
from .utils import callsign_candidate, format_agent_display_name, sanitize_child_name

logger = structlog.get_logger("agent_mesh.spawn")

T = TypeVar("T")
R = TypeVar("R")

AGENT_NAME_ENV = "AGENT_MESH_AGENT_NAME"
DEPTH_ENV = "AGENT_MESH_SUBAGENT_DEPTH"
MAX_DEPTH_ENV = "AGENT_MESH_SUBAGENT_MAX_DEPTH"

DEFAULT_PROFILE_NAME = "subagent"
DEFAULT_SUBAGENT_TOOLS: tuple[str, ...] = ("read", "write", "edit", "bash", "agent_message")
SUPPORTED_SUBAGENT_TOOL_NAMES = frozenset({"read", "bash", "edit", "write", "grep", "find", "ls"})

MAX_CALLSIGN_NONCES = 128
MAX_TRACKED_RUNS = 256
STDOUT_LINE_LIMIT = 16 * 1024 * 1024
TERMINATE_GRACE_SECONDS = 3.0

DEFAULT_SYSTEM_PROMPT = """You are a spawned subagent operating under a parent agent.

## Messaging protocol

1. If the prompt names a parent agent, you may send it direct status updates when useful
   (task started, blockers, questions that need its input).
2. Do not send a mandatory final summary to the parent. Your final output is collected automatically.
3. Do not broadcast progress updates unless the task explicitly asks for it.

## Execution protocol

- Read relevant files before editing.
- Keep changes scoped to the requested task.
- Run validation when possible.
- Finish with a concise, structured final report.
"""

_SHELL_SAFE_RE = re.compile(r"^[a-zA-Z0-9_./:@%+=,-]+$")


@dataclass(slots=True)
class SpawnTask:
    task: str
    cwd: Optional[str] = None
    agent: str = DEFAULT_PROFILE_NAME


@dataclass(slots=True)
class AgentProfile:
    """What a child is launched as: model override, tool allowlist, appended system prompt."""

    name: str = DEFAULT_PROFILE_NAME
    model: Optional[str] = None
    tools: Optional[list[str]] = field(default_factory=lambda: list(DEFAULT_SUBAGENT_TOOLS))
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


@dataclass(slots=True)
class SpawnRequest:
    """Either one ``task`` or a batch of ``tasks``, never both."""

    task: Optional[str] = None
    tasks: Optional[list[SpawnTask]] = None
    cwd: Optional[str] = None
    session_control: bool = True


def validate_spawn_request(request: SpawnRequest, max_parallel: int = 8) -> tuple[str, int]:
    """Return ``("single", 1)`` or ``("parallel", n)``; raise for anything else."""
    has_single = isinstance(request.task, str) and bool(request.task.strip())
    has_parallel = bool(request.tasks)
    if has_single == has_parallel:
        raise CoordinationError(INVALID_PARAMS, "Provide exactly one mode: task or tasks[]", recoverable=False)
    if has_parallel:
        count = len(request.tasks or [])
        if count > max_parallel:
            raise CoordinationError(
                TOO_MANY_TASKS,
                f"Too many parallel tasks ({count}). Max is {max_parallel}.",
                recoverable=False,
                data={"max": max_parallel, "count": count},
            )
        return "parallel", count
    return "single", 1


@dataclass(slots=True, frozen=True)
class DepthState:
    depth: int
    max_depth: int

    @property
    def blocked(self) -> bool:
        return self.depth >= self.max_depth

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, *, default_max_depth: int = 2) -> DepthState:
        environ = os.environ if environ is None else environ
        return cls(
            depth=_env_int(environ.get(DEPTH_ENV), 0),
            max_depth=_env_int(environ.get(MAX_DEPTH_ENV), default_max_depth),
        )


def _env_int(raw: Optional[str], default: int) -> int:
    if raw is None or not raw.strip():
        return default
    try:
        return int(float(raw))
    except ValueError:
        return default


def check_depth(state: DepthState) -> None:
    if state.blocked:
        raise CoordinationError(
            MAX_DEPTH_REACHED,
            f"Subagent spawn blocked (depth={state.depth}, max={state.max_depth}).",
            recoverable=False,
            data={"depth": state.depth, "maxDepth": state.max_depth},
        )


class CallsignAllocator:
    """Hands out collision-free callsigns per run.

    Candidates for ``(run_id, index, nonce)`` are deterministic, so a run
    replayed with the same ids gets the same names. Only the most recent
    ``max_runs`` runs keep their used-sets.
    """

    def __init__(self, *, max_runs: int = MAX_TRACKED_RUNS, max_nonces: int = MAX_CALLSIGN_NONCES) -> None:
        self._runs: OrderedDict[str, set[str]] = OrderedDict()
        self._max_runs = max_runs
        self._max_nonces = max_nonces

    def reserve(self, run_id: str, index: int) -> str:
        used = self._runs.get(run_id)
        if used is None:
            used = set()
            self._runs[run_id] = used
            while len(self._runs) > self._max_runs:
                self._runs.popitem(last=False)
        for nonce in range(self._max_nonces):
            callsign = callsign_candidate(run_id, index, nonce)
            if callsign not in used:
                used.add(callsign)
                return callsign
        fallback = callsign_candidate(run_id, index, 0)
        used.add(fallback)
        return fallback

    def used(self, run_id: str) -> frozenset[str]:
        return frozenset(self._runs.get(run_id, ()))


def build_child_name(profile_name: str, run_id: str, callsign: str) -> str:
    return sanitize_child_name(f"{profile_name}-{run_id[:4]}-{callsign}")


def quote_shell_arg(value: str) -> str:
    if _SHELL_SAFE_RE.match(value):
        return value
    if any(ch in value for ch in "\n\r\t"):
        escaped = (
            value.replace("\\", "\\\\")
            .replace("'", "\\'")
            .replace("\n", "\\n")
            .replace("\r", "\\r")
            .replace("\t", "\\t")
        )
        return f"$'{escaped}'"
    return "'" + value.replace("'", "'\\''") + "'"


def build_launch_command(binary: str, args: Sequence[str]) -> str:
    return " ".join([binary, *(quote_shell_arg(arg) for arg in args)])


def build_task_prompt(task: str, parent_agent_name: Optional[str]) -> str:
    if parent_agent_name:
        header = "\n".join(
            [
                f"Parent agent: {parent_agent_name}",
                "Direct status messages to the parent are optional and only needed for blockers/questions.",
                "Do not send a mandatory final summary message to the parent; completion output is collected automatically.",
                "Do not broadcast progress updates unless the task explicitly asks for broadcast.",
            ]
        )
    else:
        header = "Do not broadcast progress updates unless explicitly requested by the task."
    return f"{header}\n\nTask: {task}"


@dataclass(slots=True)
class LaunchPlan:
    args: list[str]
    prompt: str
    env_overrides: dict[str, str]
    prompt_dir: Optional[Path] = None

    def cleanup(self) -> None:
        if self.prompt_dir is not None:
            shutil.rmtree(self.prompt_dir, ignore_errors=True)
            self.prompt_dir = None


def build_launch(
    task: SpawnTask,
    profile: AgentProfile,
    *,
    child_name: str,
    recursion_depth: int,
    parent_agent_name: Optional[str] = None,
    enable_session_control: bool = True,
    extension_path: Optional[str] = None,
) -> LaunchPlan:
    """Assemble the child's argument list and forced environment.

    The system prompt is written to a private temp directory; call
    ``LaunchPlan.cleanup()`` once the child has exited.
    """
    args = ["--mode", "json", "-p"]
    if enable_session_control:
        args.append("--session-control")
    if profile.model:
        args.extend(["--models", profile.model])
    supported_tools = [tool for tool in (profile.tools or []) if tool in SUPPORTED_SUBAGENT_TOOL_NAMES]
    if supported_tools:
        args.extend(["--tools", ",".join(supported_tools)])
    if extension_path and Path(extension_path).exists():
        args.extend(["--extension", extension_path])

    prompt_dir: Optional[Path] = None
    if profile.system_prompt.strip():
        prompt_dir = Path(tempfile.mkdtemp(prefix="agent-mesh-subagent-"))
        prompt_path = prompt_dir / "prompt.md"
        prompt_path.write_text(profile.system_prompt, encoding="utf-8")
        args.extend(["--append-system-prompt", str(prompt_path)])

    prompt = build_task_prompt(task.task, parent_agent_name)
    args.append(prompt)
    env_overrides = {
        AGENT_NAME_ENV: child_name,
        DEPTH_ENV: str(recursion_depth + 1),
    }
    return LaunchPlan(args=args, prompt=prompt, env_overrides=env_overrides, prompt_dir=prompt_dir)


def extract_assistant_text(content: Any) -> str:
    if not isinstance(content, list):
        return ""
    parts = [
        item["text"]
        for item in content
        if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str)
    ]
    return "\n".join(parts).strip()


@dataclass(slots=True)
class _ChildStream:
    session_id: Optional[str] = None
    last_assistant: str = ""
    stderr: str = ""

    def feed(self, line: str) -> None:
        if not line.strip():
            return
        try:
            event = json.loads(line)
        except ValueError:
            return
        if not isinstance(event, dict):
            return
        if event.get("type") == "session" and isinstance(event.get("id"), str):
            self.session_id = event["id"]
            return
        message = event.get("message")
        if event.get("type") == "message_end" and isinstance(message, dict) and message.get("role") == "assistant":
            text = extract_assistant_text(message.get("content"))
            if text:
                self.last_assistant = text


LaunchCallback = Callable[[SpawnResult], Union[None, Awaitable[None]]]

_background_callbacks: set[asyncio.Future[Any]] = set()


def _fire_launch_callback(on_launch: Optional[LaunchCallback], snapshot: SpawnResult) -> None:
    if on_launch is None:
        return
    try:
        outcome = on_launch(snapshot)
    except Exception:
        logger.warning("spawn.launch_callback_failed", name=snapshot.name, exc_info=True)
        return
    if asyncio.iscoroutine(outcome) or isinstance(outcome, asyncio.Future):
        future = asyncio.ensure_future(outcome)
        _background_callbacks.add(future)

        def _done(fut: asyncio.Future[Any]) -> None:
            _background_callbacks.discard(fut)
            if not fut.cancelled() and fut.exception() is not None:
                logger.warning("spawn.launch_callback_failed", name=snapshot.name, error=str(fut.exception()))

        future.add_done_callback(_done)


async def _terminate(proc: asyncio.subprocess.Process, grace_seconds: float = TERMINATE_GRACE_SECONDS) -> None:
    if proc.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


async def _pump(proc: asyncio.subprocess.Process, stream: _ChildStream) -> int:
    assert proc.stdout is not None and proc.stderr is not None
    stderr_task = asyncio.create_task(proc.stderr.read())
    try:
        async for raw in proc.stdout:
            stream.feed(raw.decode("utf-8", errors="replace"))
        stream.stderr = (await stderr_task).decode("utf-8", errors="replace")
        return await proc.wait()
    finally:
        if not stderr_task.done():
            stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stderr_task


async def run_spawn_task(
    task: SpawnTask,
    profile: AgentProfile,
    *,
    index: int,
    run_id: str,
    runtime_cwd: Optional[str] = None,
    default_cwd: Optional[str] = None,
    enable_session_control: bool = True,
    recursion_depth: int = 0,
    parent_agent_name: Optional[str] = None,
    launch_delay_ms: int = 0,
    on_launch: Optional[LaunchCallback] = None,
    timeout_seconds: Optional[float] = None,
    allocator: Optional[CallsignAllocator] = None,
    settings: Optional[Settings] = None,
) -> SpawnResult:
    """Launch one child and supervise it to completion; failures come back in the result."""
    settings = settings or get_settings()
    allocator = allocator or _DEFAULT_ALLOCATOR
    binary = settings.spawn.agent_binary
    callsign = allocator.reserve(run_id, index)
    child_name = build_child_name(task.agent, run_id, callsign)
    plan = build_launch(
        task,
        profile,
        child_name=child_name,
        recursion_depth=recursion_depth,
        parent_agent_name=parent_agent_name,
        enable_session_control=enable_session_control,
        extension_path=settings.spawn.extension_path,
    )
    cwd = task.cwd or default_cwd or runtime_cwd or os.getcwd()
    delay_ms = max(0, int(launch_delay_ms))
    result = SpawnResult(
        agent=task.agent,
        name=child_name,
        task=task.task,
        exit_code=1,
        output="",
        working_directory=cwd,
        launch_args=list(plan.args),
        launch_command=build_launch_command(binary, plan.args),
        launch_prompt=plan.prompt,
        launch_env=dict(plan.env_overrides),
        launch_delay_ms=delay_ms,
        resolved_model=profile.model,
        resolved_tools=list(profile.tools) if profile.tools is not None else None,
        coordinator=parent_agent_name,
    )
    log = logger.bind(run_id=run_id, name=child_name, index=index)

    try:
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000.0)
        try:
            proc = await asyncio.create_subprocess_exec(
                binary,
                *plan.args,
                cwd=cwd,
                env={**os.environ, **plan.env_overrides},
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STDOUT_LINE_LIMIT,
            )
        except OSError as exc:
            result.exit_code = 1
            result.error = str(exc)
            result.output = result.error
            log.warning("spawn.launch_failed", error=result.error)
            return result

        log.info("spawn.launched", pid=proc.pid, cwd=cwd)
        _fire_launch_callback(
            on_launch,
            dataclasses.replace(
                result,
                launch_args=list(result.launch_args),
                launch_env=dict(result.launch_env),
                resolved_tools=list(result.resolved_tools) if result.resolved_tools is not None else None,
            ),
        )

        stream = _ChildStream()
        timed_out = False
        read_error: Optional[str] = None
        try:
            if timeout_seconds is not None:
                exit_code = await asyncio.wait_for(_pump(proc, stream), timeout=timeout_seconds)
            else:
                exit_code = await _pump(proc, stream)
        except TimeoutError:
            timed_out = True
            await _terminate(proc)
            exit_code = proc.returncode if proc.returncode not in (None, 0) else 1
        except ValueError as exc:
            # StreamReader raises ValueError for a line over the read limit.
            read_error = f"Subagent output could not be read: {exc}"
            await _terminate(proc)
            exit_code = proc.returncode if proc.returncode not in (None, 0) else 1
            log.warning("spawn.output_unreadable", pid=proc.pid, error=str(exc))
        except asyncio.CancelledError:
            await _terminate(proc)
            log.info("spawn.cancelled", pid=proc.pid)
            raise

        stderr = stream.stderr.strip()
        result.session_id = stream.session_id
        result.exit_code = exit_code
        result.output = stream.last_assistant or stderr or "(no output)"
        if timed_out:
            result.error = f"Subagent timed out after {timeout_seconds:g}s"
        elif read_error is not None:
            result.error = read_error
        elif exit_code != 0 and stderr:
            result.error = stderr
        if result.exit_code != 0 and not result.error:
            result.error = result.output or "Subagent process failed"
        log.info("spawn.completed", exit_code=result.exit_code, session_id=result.session_id, failed=bool(result.error))
        return result
    finally:
        plan.cleanup()


async def map_with_concurrency_limit(
    items: Sequence[T],
    concurrency: int,
    fn: Callable[[T, int], Awaitable[R]],
) -> list[R]:
    """Run ``fn`` over ``items`` with at most ``concurrency`` in flight; results keep input order."""
    if not items:
        return []
    worker_count = max(1, min(concurrency, len(items)))
    results: list[Any] = [None] * len(items)
    cursor = 0

    async def _worker() -> None:
        nonlocal cursor
        while True:
            index = cursor
            cursor += 1
            if index >= len(items):
                return
            results[index] = await fn(items[index], index)

    await asyncio.gather(*(_worker() for _ in range(worker_count)))
    return results


@dataclass(slots=True)
class ModelResolution:
    model: Optional[str] = None
    warning: Optional[str] = None


def resolve_model_fallback(provider: str, model_id: str, available: Iterable[tuple[str, str]]) -> ModelResolution:
    """Pick the closest available ``provider/model`` for children when the exact model is missing.

    ``available`` holds ``(provider, model_id)`` pairs. Tries an exact id, then
    the id cut back at each ``-``/``_`` boundary, then the provider's first model.
    """
    requested_model = model_id.strip()
    requested_provider = provider.strip()
    provider_models = [(p, m) for p, m in available if p.lower() == requested_provider.lower()]
    if not provider_models:
        return ModelResolution()

    requested = f"{requested_provider}/{requested_model}"
    for p, m in provider_models:
        if m.lower() == requested_model.lower():
            return ModelResolution(model=f"{p}/{m}")

    candidate = requested_model
    while candidate:
        cut = max(candidate.rfind("-"), candidate.rfind("_"))
        if cut <= 0:
            break
        candidate = candidate[:cut]
        for p, m in provider_models:
            if m.lower() == candidate.lower():
                return ModelResolution(
                    model=f"{p}/{m}",
                    warning=f"Requested model {requested} is unavailable; using {p}/{m} for subagents.",
                )

    p, m = provider_models[0]
    return ModelResolution(
        model=f"{p}/{m}",
        warning=f"Requested model {requested} is unavailable; using {p}/{m} for subagents.",
    )


@dataclass(slots=True)
class OrchestrationReport:
    run_id: str
    single: bool
    profile: str
    results: list[SpawnResult]
    concurrency: int = 1
    model_warning: Optional[str] = None

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.exit_code == 0)

    @property
    def is_error(self) -> bool:
        return self.succeeded != len(self.results)

    def to_details(self) -> dict[str, Any]:
        details: dict[str, Any] = {
            "mode": "subagent",
            "runId": self.run_id,
            "single": self.single,
            "profile": self.profile,
            "modelResolutionWarning": self.model_warning,
        }
        if self.single:
            details["result"] = self.results[0].to_payload() if self.results else None
        else:
            details["concurrency"] = self.concurrency
            details["results"] = [result.to_payload() for result in self.results]
        return details


def build_completion_summary(results: Sequence[SpawnResult], *, is_error: bool, fallback_text: str = "") -> str:
    """Message posted back to the orchestrating agent once a run finishes."""
    if len(results) > 1:
        success_count = sum(1 for result in results if result.exit_code == 0)
        if is_error:
            intro = (
                f"Received final results from {len(results)} subagents "
                f"({success_count} succeeded, {len(results) - success_count} failed)."
            )
        else:
            intro = f"Received final results from {len(results)} subagents."
        sections = []
        for position, result in enumerate(results, start=1):
            status = "ok" if result.exit_code == 0 else "failed"
            output = (result.output or "").strip() or "(no output)"
            sections.append(f"### {position}. {format_agent_display_name(result.name)} ({status})\n\n{output}")
        body = "\n\n".join(sections)
    else:
        single = results[0] if results else None
        label = format_agent_display_name(single.name) if single and single.name else "the subagent"
        intro = f"Received an error from {label}." if is_error else f"Received final results from {label}."
        body = ((single.output if single else "") or fallback_text or "(no output)").strip() or "(no output)"
    return f"{intro}\n\n{body}"


@dataclass(slots=True)
class PendingCompletion:
    summary: str
    target_session_file: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


def should_defer_completion(target_session_file: Optional[str], active_session_file: Optional[str]) -> bool:
    if not target_session_file:
        return False
    if not active_session_file:
        return True
    return target_session_file != active_session_file


def partition_completion_updates(
    pending: Iterable[PendingCompletion],
    current_session_file: Optional[str],
) -> tuple[list[PendingCompletion], list[PendingCompletion]]:
    """Split into ``(deliverable, deferred)`` for the currently active session."""
    deliverable: list[PendingCompletion] = []
    deferred: list[PendingCompletion] = []
    for item in pending:
        if should_defer_completion(item.target_session_file, current_session_file):
            deferred.append(item)
        else:
            deliverable.append(item)
    return deliverable, deferred


_DEFAULT_ALLOCATOR = CallsignAllocator()


class SpawnOrchestrator:
    """Runs spawn requests for one agent, one run at a time.

    Usage:
        orchestrator = SpawnOrchestrator("SwiftRiver")
        report = await orchestrator.run(SpawnRequest(task="audit the parser"))
    """

    def __init__(
        self,
        agent_name: str,
        *,
        settings: Optional[Settings] = None,
        profile: Optional[AgentProfile] = None,
        depth_state: Optional[DepthState] = None,
        allocator: Optional[CallsignAllocator] = None,
        runtime_cwd: Optional[str] = None,
        on_orchestrator: Optional[Callable[[], None]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._agent_name = agent_name
        self._profile = profile or AgentProfile()
        self._depth_state = depth_state or DepthState.from_env(default_max_depth=self._settings.spawn.default_max_depth)
        self._allocator = allocator or CallsignAllocator()
        self._runtime_cwd = runtime_cwd or os.getcwd()
        self._on_orchestrator = on_orchestrator
        self._active_runs = 0
        self.has_spawned = False

    @property
    def running(self) -> bool:
        return self._active_runs > 0

    @property
    def depth_state(self) -> DepthState:
        return self._depth_state

    def start(
        self,
        request: SpawnRequest,
        *,
        on_launch: Optional[LaunchCallback] = None,
        timeout_seconds: Optional[float] = None,
        model_warning: Optional[str] = None,
    ) -> asyncio.Task[OrchestrationReport]:
        """Validate and gate synchronously, then supervise the run in a background task."""
        mode, count = validate_spawn_request(request, self._settings.spawn.max_parallel)
        if self._active_runs > 0:
            raise CoordinationError(
                ALREADY_RUNNING,
                "A subagent run is already in progress. Final outputs are collected and posted when it completes.",
                data={"launchMode": mode, "taskCount": count},
            )
        check_depth(self._depth_state)
        self._active_runs += 1
        try:
            return asyncio.create_task(
                self._execute(request, mode, on_launch=on_launch, timeout_seconds=timeout_seconds, model_warning=model_warning)
            )
        except BaseException:
            self._active_runs -= 1
            raise

    async def run(
        self,
        request: SpawnRequest,
        *,
        on_launch: Optional[LaunchCallback] = None,
        timeout_seconds: Optional[float] = None,
        model_warning: Optional[str] = None,
    ) -> OrchestrationReport:
        task = self.start(request, on_launch=on_launch, timeout_seconds=timeout_seconds, model_warning=model_warning)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            raise

    async def _execute(
        self,
        request: SpawnRequest,
        mode: str,
        *,
        on_launch: Optional[LaunchCallback],
        timeout_seconds: Optional[float],
        model_warning: Optional[str],
    ) -> OrchestrationReport:
        try:
            self._mark_orchestrator()
            run_id = uuid.uuid4().hex[:8]
            profile = self._profile
            common: dict[str, Any] = {
                "run_id": run_id,
                "runtime_cwd": self._runtime_cwd,
                "default_cwd": request.cwd,
                "enable_session_control": request.session_control,
                "recursion_depth": self._depth_state.depth,
                "parent_agent_name": self._agent_name,
                "on_launch": on_launch,
                "timeout_seconds": timeout_seconds,
                "allocator": self._allocator,
                "settings": self._settings,
            }
            logger.info("spawn.run_started", run_id=run_id, mode=mode, agent=self._agent_name)

            if mode == "single":
                single_task = SpawnTask(task=request.task or "", cwd=request.cwd, agent=profile.name)
                result = await run_spawn_task(single_task, profile, index=0, **common)
                return OrchestrationReport(
                    run_id=run_id,
                    single=True,
                    profile=profile.name,
                    results=[result],
                    model_warning=model_warning,
                )

            tasks = [dataclasses.replace(entry, agent=profile.name) for entry in request.tasks or []]
            concurrency = max(1, min(self._settings.spawn.max_concurrency, len(tasks)))

            async def _run_one(entry: SpawnTask, index: int) -> SpawnResult:
                return await run_spawn_task(entry, profile, index=index, **common)

            results = await map_with_concurrency_limit(tasks, concurrency, _run_one)
            report = OrchestrationReport(
                run_id=run_id,
                single=False,
                profile=profile.name,
                results=results,
                concurrency=concurrency,
                model_warning=model_warning,
            )
            logger.info("spawn.run_finished", run_id=run_id, succeeded=report.succeeded, total=len(results))
            return report
        finally:
            self._active_runs = max(0, self._active_runs - 1)

    def _mark_orchestrator(self) -> None:
        if self.has_spawned:
            return
        self.has_spawned = True
        if self._on_orchestrator is not None:
            try:
                self._on_orchestrator()
            except Exception:
                logger.warning("spawn.mark_orchestrator_failed", agent=self._agent_name, exc_info=True)
