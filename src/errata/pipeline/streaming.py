"""Streaming runner factory shared by every concrete agent.

:func:`create_streaming_runner` turns a :class:`StreamingRunnerConfig` into a
``run(data_dir, story_id, opts)`` coroutine that always walks the same stages:

1. Story exists.
2. Agent validation.
3. Resolve the model for the role.
4. Build the base context (optional).
5. Merge extension fields into the block context.
6. Build the tool set.
7. Compile.
8. Extract the system and user messages.
9. Construct a tool-calling session bounded by max steps.
10. Build the messages.
11. Stream.
12. Report usage in the background.
13. Run the after-stream hook.

Agents differ only in the hooks they plug into the config.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal, Mapping, Union

from ..blocks.compiler import find_message
from ..blocks.context import CompiledAgentContext, compile_agent_context
from ..blocks.helpers import load_system_prompt_fragments
from ..blocks.types import AgentBlockContext
from ..context_state import ContextState, build_context_state
from ..errors import StoryNotFoundError
from ..services.container import Services, create_services
from ..storage.types import Fragment, StoryMeta
from ..tools.fragment_tools import create_fragment_tools
from ..tools.types import ToolSet
from .events import AgentStreamCompletion, EventStreamResult
from .session import ToolCallingSession, ToolChoice

__all__ = [
    "DEFAULT_INSTRUCTIONS",
    "StreamingRunRequest",
    "StreamingRunner",
    "StreamingRunnerConfig",
    "create_streaming_runner",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = "You are a helpful assistant."

StreamingRunner = Callable[..., Awaitable[EventStreamResult]]


@dataclass(slots=True)
class StreamingRunRequest:
    """What the config hooks see for one run; filled in as stages complete."""

    data_dir: Path
    story_id: str
    opts: Mapping[str, Any]
    story: StoryMeta
    services: Services
    validated: Any = None
    model_id: str | None = None
    context_state: ContextState | None = None


_MaybeAwaitable = Union[Any, Awaitable[Any]]


@dataclass(slots=True, frozen=True)
class StreamingRunnerConfig:
    """The knobs an agent sets on the shared pipeline.

    Attributes:
        name: Agent name, used for logging, block compilation and usage.
        role: Model role key; defaults to ``name``.
        max_steps: Step bound when ``opts`` carries no ``max_steps``.
        tool_choice: Passed to the session.
        build_context: Whether to build the story context state.
        read_only: ``True`` for read-only fragment tools, ``False`` for
            write-enabled ones, ``"none"`` for no tools at all.
        validate: ``request -> validated``; raise to abort the run.
        context_options: ``opts -> kwargs`` for :func:`build_context_state`.
        extra_context: ``request -> mapping`` merged into the block context.
        tools: ``(request, fragment_tools) -> ToolSet`` to replace the tools.
        messages: ``(compiled, opts) -> messages``; defaults to the compiled
            user message.
        after_stream: Called with the stream result once it exists.
    """

    name: str
    role: str | None = None
    max_steps: int = 10
    tool_choice: ToolChoice = "auto"
    build_context: bool = True
    read_only: bool | Literal["none"] = True
    validate: Callable[[StreamingRunRequest], _MaybeAwaitable] | None = None
    context_options: Callable[[Mapping[str, Any]], Mapping[str, Any]] | None = None
    extra_context: Callable[[StreamingRunRequest], _MaybeAwaitable] | None = None
    tools: Callable[[StreamingRunRequest, ToolSet], ToolSet] | None = None
    messages: Callable[[CompiledAgentContext, Mapping[str, Any]], list[dict[str, str]]] | None = None
    after_stream: Callable[[EventStreamResult], None] | None = None


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _base_block_context(
    story: StoryMeta,
    state: ContextState | None,
    model_id: str,
    system_fragments: list[Fragment],
) -> AgentBlockContext:
    if state is None:
        return AgentBlockContext(story=story, model_id=model_id, system_prompt_fragments=system_fragments)
    return AgentBlockContext(
        story=state.story,
        prose_fragments=list(state.prose_fragments),
        sticky_guidelines=list(state.sticky_guidelines),
        sticky_knowledge=list(state.sticky_knowledge),
        sticky_characters=list(state.sticky_characters),
        guideline_shortlist=list(state.guideline_shortlist),
        knowledge_shortlist=list(state.knowledge_shortlist),
        character_shortlist=list(state.character_shortlist),
        system_prompt_fragments=system_fragments,
        model_id=model_id,
    )


def _report_usage(
    services: Services,
    story_id: str,
    source: str,
    model_id: str,
    session: ToolCallingSession,
    completion: asyncio.Future[AgentStreamCompletion],
) -> None:
    if completion.cancelled() or completion.exception() is not None:
        return
    usage = session.total_usage
    if usage is None:
        LOGGER.debug("No usage reported for %s", source)
        return
    try:
        services.usage.report_usage(story_id, source, usage, model_id)
    except Exception as exc:
        LOGGER.warning("Failed to record token usage for %s: %s", source, exc)


def create_streaming_runner(config: StreamingRunnerConfig) -> StreamingRunner:
    """Build the ``run`` coroutine for ``config``.

    Returns:
        ``run(data_dir, story_id, opts, *, services=None)``, resolving to an
        :class:`EventStreamResult`. Without ``services`` a container rooted
        at ``data_dir`` is created.
    """
    role = config.role or config.name
    logger = logging.getLogger(f"errata.agents.{config.name}")

    async def run(
        data_dir: Path | str,
        story_id: str,
        opts: Mapping[str, Any] | None = None,
        *,
        services: Services | None = None,
    ) -> EventStreamResult:
        opts = dict(opts or {})
        services = services or create_services(data_dir)
        store = services.store
        logger.info("Starting %s for story %s", config.name, story_id)

        LOGGER.debug("Stage: Story (%s)", config.name)
        story = store.get_story(story_id)
        if story is None:
            raise StoryNotFoundError(story_id)
        request = StreamingRunRequest(
            data_dir=Path(data_dir),
            story_id=story_id,
            opts=opts,
            story=story,
            services=services,
        )

        LOGGER.debug("Stage: Validate (%s)", config.name)
        if config.validate is not None:
            request.validated = await _resolve(config.validate(request))

        LOGGER.debug("Stage: Resolve model (%s)", role)
        resolved = services.models.resolve(story_id, role)
        request.model_id = resolved.model_id
        logger.info("Resolved model %s via provider %s", resolved.model_id, resolved.provider_id)

        if config.build_context:
            LOGGER.debug("Stage: Base context")
            context_kwargs = dict(config.context_options(opts)) if config.context_options else {}
            request.context_state = build_context_state(store, story_id, **context_kwargs)

        LOGGER.debug("Stage: Merge context")
        block_context = _base_block_context(
            story,
            request.context_state,
            resolved.model_id,
            load_system_prompt_fragments(store, story_id),
        )
        if config.extra_context is not None:
            block_context = block_context.merged(await _resolve(config.extra_context(request)))

        LOGGER.debug("Stage: Tools (read_only=%s)", config.read_only)
        if config.read_only == "none":
            tools: ToolSet = {}
        else:
            fragment_tools = create_fragment_tools(store, story_id, read_only=config.read_only is not False)
            tools = config.tools(request, fragment_tools) if config.tools else fragment_tools

        LOGGER.debug("Stage: Compile")
        compiled = compile_agent_context(
            store,
            story_id,
            config.name,
            block_context,
            tools,
            block_store=services.block_store,
        )

        LOGGER.debug("Stage: Extract messages")
        system_message = find_message(compiled.messages, "system")
        user_message = find_message(compiled.messages, "user")

        max_steps = opts.get("max_steps") or config.max_steps
        LOGGER.debug("Stage: Session (max_steps=%d, tool_choice=%s)", max_steps, config.tool_choice)
        session = ToolCallingSession(
            client=resolved.client,
            model_id=resolved.model_id,
            instructions=(system_message.content if system_message else "") or DEFAULT_INSTRUCTIONS,
            tools=compiled.tools,
            max_steps=int(max_steps),
            tool_choice=config.tool_choice,
            temperature=resolved.temperature,
        )

        LOGGER.debug("Stage: Messages")
        if config.messages is not None:
            messages = config.messages(compiled, opts)
        else:
            messages = [{"role": "user", "content": user_message.content}] if user_message else []

        LOGGER.debug("Stage: Stream (%d message(s))", len(messages))
        result = EventStreamResult(session.stream(messages))

        LOGGER.debug("Stage: Usage")
        result.completion.add_done_callback(
            lambda completion: _report_usage(services, story_id, config.name, resolved.model_id, session, completion)
        )

        if config.after_stream is not None:
            LOGGER.debug("Stage: After stream")
            config.after_stream(result)
        return result

    run.__name__ = f"run_{config.name.replace('.', '_').replace('-', '_')}"
    return run
