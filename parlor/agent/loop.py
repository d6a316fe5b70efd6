"""Agent loop: the activation pipeline."""

from __future__ import annotations

import asyncio
import random
from typing import Callable

from loguru import logger

from parlor.agent.context import BuildContextParams, ContextBuilder, ContextBuildResult
from parlor.agent.state import ChannelStateManager
from parlor.agent.text import strip_reply_prefix, strip_thinking_blocks, truncate_at_participant
from parlor.agent.tool_loop import ToolExecutionLoop, ToolLoopResult, completion_text, send_thinking
from parlor.agent.tools.base import ToolContext
from parlor.agent.tools.cache import ToolCacheStore
from parlor.agent.tools.mcp import MCPServerPool
from parlor.agent.tools.plugins import PluginLoader
from parlor.agent.tools.registry import ToolRegistry
from parlor.bus.events import Event, PlatformMessage
from parlor.bus.queue import EventQueue
from parlor.config.loader import ConfigSystem
from parlor.config.schema import BotConfig
from parlor.errors import ConfigError
from parlor.platform.base import PlatformConnector
from parlor.providers.router import LLMRouter
from parlor.session.activations import ActivationStore, ActivationTrigger

M_COMMAND_PREFIX = "m "
REFUSAL_REACTION = "🛑"
DEFAULT_RECENCY_WINDOW = 200
DEFAULT_ROLLING_BUFFER = 50
FETCH_DEPTH_MARGIN = 50


class AgentLoop:
    """
    The activation pipeline.

    It:
    1. Polls batches of events from the queue
    2. Decides whether the batch should wake the bot
    3. Runs one activation task per channel at a time
    4. Builds context, drives the tool loop and delivers the reply
    5. Updates channel state only after a successful delivery
    """

    def __init__(
        self,
        bot_id: str,
        queue: EventQueue,
        connector: PlatformConnector,
        state: ChannelStateManager,
        config_system: ConfigSystem,
        context_builder: ContextBuilder,
        router: LLMRouter,
        registry: ToolRegistry,
        tool_cache: ToolCacheStore,
        activations: ActivationStore,
        plugin_loader: PluginLoader | None = None,
        mcp_pool: MCPServerPool | None = None,
        rng: Callable[[], float] = random.random,
    ):
        self.bot_id = bot_id
        self.queue = queue
        self.connector = connector
        self.state = state
        self.config_system = config_system
        self.context_builder = context_builder
        self.router = router
        self.registry = registry
        self.tool_cache = tool_cache
        self.activations = activations
        self.plugin_loader = plugin_loader or PluginLoader()
        self.mcp_pool = mcp_pool or MCPServerPool()
        self.tool_loop = ToolExecutionLoop(router, registry, tool_cache, activations, connector, bot_id)
        self.rng = rng

        self.idle_sleep_s = 0.1
        self.error_sleep_s = 1.0

        self.bot_user_id: str | None = connector.bot_user_id
        self.bot_message_ids: set[str] = set()
        self.active_channels: set[str] = set()
        self._pending_deletions: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._mcp_initialized = False
        self._running = False

    def set_bot_user_id(self, user_id: str) -> None:
        self.bot_user_id = user_id
        logger.info(f"Bot user id set to {user_id}")

    async def run(self) -> None:
        """Poll the queue until stop() is called."""
        self._running = True
        logger.info(f"Agent loop started for {self.bot_id}")

        while self._running:
            try:
                batch = self.queue.poll_batch()
                if batch:
                    logger.debug(f"Polled batch of {len(batch)} ({self.queue.size()} queued)")
                    await self.process_batch(batch)
                else:
                    await asyncio.sleep(self.idle_sleep_s)
            except Exception as e:
                logger.error(f"Error in agent loop: {e}")
                await asyncio.sleep(self.error_sleep_s)

        logger.info("Agent loop stopped")

    def stop(self) -> None:
        """Stop polling. In-flight activations keep running; see drain()."""
        self._running = False
        logger.info("Agent loop stopping")

    async def drain(self) -> None:
        """Wait for every in-flight activation to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def process_batch(self, events: list[Event]) -> None:
        if not events:
            return
        first = events[0]
        channel_id, guild_id = first.channel_id, first.guild_id

        for event in events:
            msg = event.message
            if event.kind == "delete" and msg is not None and self._is_own(msg):
                self._forget_bot_message(event.channel_id, msg.id)

        trigger_type = await self.should_activate(events, channel_id, guild_id)
        if trigger_type is None:
            logger.debug("No activation needed")
            return

        trigger = self._find_triggering_message(events)
        triggering_message_id = trigger.id if trigger else None

        for event in events:
            msg = event.message
            if event.kind != "message" or msg is None or msg.id not in self._pending_deletions:
                continue
            self._pending_deletions.discard(msg.id)
            try:
                await self.connector.delete_message(channel_id, msg.id)
                logger.info(f"Deleted m command message {msg.id} in {channel_id}")
            except Exception as e:
                logger.warning(f"Failed to delete m command message {msg.id}: {e}")

        # No await between the check and the add: the hand-off is atomic.
        if channel_id in self.active_channels:
            logger.debug(f"Channel {channel_id} already being processed, skipping")
            return
        self.active_channels.add(channel_id)

        task = asyncio.create_task(
            self._run_activation(channel_id, guild_id, triggering_message_id, trigger_type)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_activation(
        self,
        channel_id: str,
        guild_id: str | None,
        triggering_message_id: str | None,
        trigger_type: str,
    ) -> None:
        try:
            await self.handle_activation(channel_id, guild_id, triggering_message_id, trigger_type)
        except Exception as e:
            logger.error(f"Failed to handle activation in {channel_id} (guild={guild_id}): {e}")
        finally:
            self.active_channels.discard(channel_id)

    # Deciding

    async def should_activate(self, events: list[Event], channel_id: str, guild_id: str | None) -> str | None:
        """
        Check the batch's messages for a reason to respond.

        Returns the trigger type (``mention``, ``reply``, ``random`` or
        ``m_command``), or None when the bot should stay quiet.

        In order: an ``m `` command addressed to us, a direct mention, a
        reply to one of our messages, the inner name, then a random chance.
        """
        try:
            base_config: BotConfig | None = self.config_system.load_config(self.bot_id, guild_id)
        except ConfigError as e:
            logger.debug(f"Base config unavailable for activation check: {e}")
            base_config = None
        if base_config is not None and base_config.api_only:
            logger.debug("API-only mode enabled, skipping activation")
            return None

        config: BotConfig | None = None
        sample: float | None = None

        for event in events:
            msg = event.message
            if event.kind != "message" or msg is None:
                continue
            if msg.system or self._is_own(msg):
                continue

            mentions_us = bool(self.bot_user_id) and self.bot_user_id in msg.mentions
            content = msg.content.strip()

            if content.startswith(M_COMMAND_PREFIX):
                replies_to_us = msg.reply_to is not None and msg.reply_to in self.bot_message_ids
                if mentions_us or replies_to_us:
                    logger.debug(f"Activated by m command {msg.id}")
                    self._pending_deletions.add(msg.id)
                    return "m_command"
                logger.debug(f"m command {msg.id} not addressed to us, ignoring")
                return None

            if mentions_us:
                if config is None:
                    config = await self._load_batch_config(channel_id, guild_id)
                    if config is None:
                        return None
                limit = config.max_bot_reply_chain_depth
                if limit is not None:
                    depth = await self.connector.get_bot_reply_chain_depth(channel_id, msg)
                    if depth >= limit:
                        logger.info(f"Bot reply chain depth {depth} reached limit {limit} on {msg.id}")
                        await self.connector.add_reaction(channel_id, msg.id, config.bot_reply_chain_depth_emote)
                        continue
                logger.debug(f"Activated by mention {msg.id}")
                return "mention"

            if msg.reply_to and await self._is_reply_to_us(channel_id, msg.reply_to):
                if msg.author.bot:
                    logger.debug(f"Ignoring bot reply {msg.id} without mention")
                    continue
                logger.debug(f"Activated by reply {msg.id}")
                return "reply"

            if config is None:
                config = await self._load_batch_config(channel_id, guild_id)
                if config is None:
                    return None

            if config.reply_on_name and config.inner_name and config.inner_name.lower() in content.lower():
                logger.debug(f"Activated by name mention {msg.id}")
                return "mention"

            if config.reply_on_random > 0:
                if sample is None:
                    sample = self.rng()
                if sample < 1 / config.reply_on_random:
                    logger.debug(f"Activated by random chance ({sample:.3f} < 1/{config.reply_on_random})")
                    return "random"

        return None

    async def _load_batch_config(self, channel_id: str, guild_id: str | None) -> BotConfig | None:
        try:
            pinned = await self.connector.fetch_pinned_configs(channel_id)
            return self.config_system.load_config(self.bot_id, guild_id, pinned)
        except Exception as e:
            logger.warning(f"Failed to load config for activation check: {e}")
            return None

    async def _is_reply_to_us(self, channel_id: str, message_id: str) -> bool:
        if message_id in self.bot_message_ids:
            return True
        if not self.bot_user_id:
            return False
        try:
            own = await self.connector.is_own_message(channel_id, message_id)
        except Exception as e:
            logger.debug(f"Could not check reply target {message_id}: {e}")
            return False
        if own:
            self.bot_message_ids.add(message_id)
        return own

    def _is_own(self, msg: PlatformMessage) -> bool:
        return bool(self.bot_user_id) and msg.author.id == self.bot_user_id

    @staticmethod
    def _find_triggering_message(events: list[Event]) -> PlatformMessage | None:
        messages = [e.message for e in events if e.kind == "message" and e.message is not None]
        for msg in messages:
            if not msg.system:
                return msg
        return messages[0] if messages else None

    def _forget_bot_message(self, channel_id: str, message_id: str) -> None:
        self.bot_message_ids.discard(message_id)
        removed = self.tool_cache.remove_entries_by_bot_message_ids(self.bot_id, channel_id, [message_id])
        touched = self.activations.remove_activations_for_message(self.bot_id, channel_id, message_id)
        if removed or touched:
            logger.info(
                f"Bot message {message_id} deleted: removed {removed} tool cache entries, "
                f"updated {touched} activations"
            )

    # Activating

    async def handle_activation(
        self,
        channel_id: str,
        guild_id: str | None,
        triggering_message_id: str | None = None,
        trigger_type: str = "mention",
    ) -> None:
        logger.info(f"Bot {self.bot_id} activated in {channel_id} (guild={guild_id}, trigger={triggering_message_id})")
        await self.connector.start_typing(channel_id)
        try:
            await self._activate(channel_id, guild_id, triggering_message_id, trigger_type)
        except Exception:
            await self.connector.stop_typing(channel_id)
            raise

    async def _activate(
        self,
        channel_id: str,
        guild_id: str | None,
        triggering_message_id: str | None,
        trigger_type: str,
    ) -> None:
        state = self.state.get_or_initialize(
            self.bot_id, channel_id, self.tool_cache.load(self.bot_id, channel_id)
        )

        pinned = await self.connector.fetch_pinned_configs(channel_id)
        config = self.config_system.load_config(self.bot_id, guild_id, pinned)

        fetch_depth = (
            (config.recency_window_messages or DEFAULT_RECENCY_WINDOW)
            + (config.rolling_threshold or DEFAULT_ROLLING_BUFFER)
            + FETCH_DEPTH_MARGIN
        )
        context = await self.connector.fetch_context(channel_id, fetch_depth, pinned)
        if context.guild_id and context.guild_id != guild_id:
            config = self.config_system.load_config(self.bot_id, context.guild_id, pinned)
        logger.debug(f"Fetched {len(context.messages)} messages and {len(context.images)} images (depth {fetch_depth})")

        await self._prepare_tools(channel_id, guild_id, config)

        context.messages = [m for m in context.messages if not m.content.strip().startswith(M_COMMAND_PREFIX)]

        if context.messages:
            self.state.prune_tool_cache(self.bot_id, channel_id, context.messages[0].id)

        existing_ids = {mid for m in context.messages for mid in m.all_ids}
        tool_cache = self.tool_cache.load(self.bot_id, channel_id, existing_ids)

        activations = None
        if config.preserve_thinking_context:
            activations = self.activations.load_activations(self.bot_id, channel_id, existing_ids)
            logger.debug(f"Loaded {len(activations)} activations for context")
        else:
            covered = {mid for entry in tool_cache for mid in entry.call.bot_message_ids}
            if covered:
                before = len(context.messages)
                context.messages = [m for m in context.messages if m.id not in covered]
                logger.debug(f"Filtered {before - len(context.messages)} messages covered by tool cache")

        result = self.context_builder.build_context(BuildContextParams(
            context=context,
            config=config,
            tool_cache=tool_cache,
            last_cache_marker=state.last_cache_marker,
            messages_since_roll=state.messages_since_roll,
            bot_username=self.connector.get_bot_username(),
            activations=activations,
        ))
        if config.tools_enabled and len(self.registry):
            result.request.tools = self.registry.get_definitions()

        activation_id: str | None = None
        if config.preserve_thinking_context:
            anchor = triggering_message_id or (context.messages[-1].id if context.messages else "")
            activation_id = self.activations.start_activation(
                self.bot_id, channel_id, ActivationTrigger(type=trigger_type, anchor_message_id=anchor)
            ).id

        try:
            loop_result, sent_ids, full_text = await self._respond(
                result, config, context.messages, channel_id, triggering_message_id, activation_id
            )
        except Exception:
            if activation_id:
                self.activations.abort_activation(activation_id)
            raise

        if activation_id:
            self.activations.add_completion(activation_id, full_text, sent_ids)
            if sent_ids:
                self.activations.set_message_context(activation_id, sent_ids[0], full_text)
            self.activations.complete_activation(activation_id)

        bot_ids = loop_result.preamble_message_ids + sent_ids
        if loop_result.tool_call_ids and bot_ids:
            self.tool_cache.update_bot_message_ids(self.bot_id, channel_id, loop_result.tool_call_ids, bot_ids)

        if config.prompt_caching:
            if result.cache_marker and result.cache_marker != state.last_cache_marker:
                self.state.update_cache_marker(self.bot_id, channel_id, result.cache_marker)
            oldest = next((m.message_id for m in result.request.messages if m.message_id), None)
            if oldest != state.cache_oldest_message_id:
                self.state.update_cache_oldest_message_id(self.bot_id, channel_id, oldest)
        if result.did_truncate:
            self.state.reset_message_count(self.bot_id, channel_id)
        else:
            self.state.increment_message_count(self.bot_id, channel_id)

        logger.info(
            f"Activation complete in {channel_id}: {len(sent_ids)} messages, "
            f"{loop_result.completion.usage.input_tokens} in / {loop_result.completion.usage.output_tokens} out tokens, "
            f"truncated={result.did_truncate}"
        )

    async def _respond(
        self,
        result: ContextBuildResult,
        config: BotConfig,
        history: list[PlatformMessage],
        channel_id: str,
        triggering_message_id: str | None,
        activation_id: str | None,
    ) -> tuple[ToolLoopResult, list[str], str]:
        """Run the tool loop and deliver the cleaned reply. Returns the loop result, sent ids and raw text."""
        loop_result = await self.tool_loop.run(
            result.request, config, channel_id, triggering_message_id, activation_id
        )
        completion = loop_result.completion
        await self.connector.stop_typing(channel_id)

        refused = completion.stop_reason == "refusal"
        if refused:
            logger.warning("LLM refused to complete request")

        full_text = completion_text(completion)
        response = truncate_at_participant(
            full_text,
            history,
            bot_names=[config.inner_name, self.connector.get_bot_username() or ""],
            stop_sequences=result.request.stop_sequences if config.mode == "prefill" else None,
        )
        split = strip_thinking_blocks(response)
        if split.thoughts:
            logger.debug(f"Stripped {len(split.thoughts)} thinking blocks from response")
            if config.debug_thinking:
                await send_thinking(self.connector, channel_id, split.thoughts, triggering_message_id)
            response = split.stripped.strip()
        response = strip_reply_prefix(response)

        sent_ids: list[str] = []
        if response.strip():
            sent_ids = await self.connector.send_message(channel_id, response, triggering_message_id)
            self.bot_message_ids.update(sent_ids)
            if refused:
                for message_id in sent_ids:
                    await self.connector.add_reaction(channel_id, message_id, REFUSAL_REACTION)
        else:
            logger.warning("No text content to send in response")
            if refused and triggering_message_id:
                await self.connector.add_reaction(channel_id, triggering_message_id, REFUSAL_REACTION)
        self.bot_message_ids.update(loop_result.preamble_message_ids)
        return loop_result, sent_ids, full_text

    async def _prepare_tools(self, channel_id: str, guild_id: str | None, config: BotConfig) -> None:
        if not self._mcp_initialized and config.mcp_servers:
            logger.info(f"Initializing {len(config.mcp_servers)} MCP servers")
            await self.mcp_pool.initialize(config.mcp_servers, self.registry)
            self._mcp_initialized = True
        if config.tool_plugins:
            self.plugin_loader.load(config.tool_plugins, self.registry)
        self.registry.set_context(ToolContext(
            bot_id=self.bot_id,
            channel_id=channel_id,
            guild_id=guild_id,
            config=config,
            connector=self.connector,
            cache_dir=self.tool_cache.cache_dir,
        ))

    async def close(self) -> None:
        await self.mcp_pool.close()
