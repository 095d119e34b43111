import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass

import httpx

from vaultkeeper.cancellation import CancellationToken
from vaultkeeper.config import Settings
from vaultkeeper.conversation import Conversation, ConversationContent, Role
from vaultkeeper.dispatcher import FunctionDispatcher
from vaultkeeper.events import (
    ChatCompleteEvent,
    ChatEvent,
    ChatListener,
    FunctionCallEvent,
    FunctionResultEvent,
    TextDeltaEvent,
    ThoughtEvent,
    TitleChangedEvent,
    TurnErrorEvent,
)
from vaultkeeper.functions import FUNCTION_DEFINITIONS, FunctionCall, FunctionDefinition, FunctionResponse
from vaultkeeper.instrumentation import chat_span, record_error, tool_span, turn_span
from vaultkeeper.naming import NamingService, create_namer
from vaultkeeper.prompt import Prompt
from vaultkeeper.provider import ProviderCodec, create_codec
from vaultkeeper.store import ConversationStore, JsonConversationStore
from vaultkeeper.transport import StreamingTransport
from vaultkeeper.vault import LocalVault

logger = logging.getLogger(__name__)

MAX_TURNS_MESSAGE = "Maximum turns reached. Please try again."
INTERRUPTED_RESPONSE = {"error": "The request was stopped before this function returned."}


class AdmissionGate:
    """A single slot. ``try_acquire`` refuses instead of queueing.

    Each acquisition hands out a ticket; ``release`` only frees the slot
    for the ticket that currently holds it, so a stopped submission that
    finishes late cannot free a slot taken by a newer one.
    """

    def __init__(self) -> None:
        self._holder: object | None = None

    @property
    def locked(self) -> bool:
        return self._holder is not None

    def try_acquire(self) -> object | None:
        if self._holder is not None:
            return None
        self._holder = object()
        return self._holder

    def release(self, ticket: object) -> None:
        if self._holder is ticket:
            self._holder = None

    def force_release(self) -> None:
        self._holder = None


@dataclass
class TurnResult:
    """How one streamed model turn ended."""

    function_call: FunctionCall | None = None
    should_continue: bool = False
    failed: bool = False


class ChatOrchestrator:
    """Runs the submit loop for one chat session.

    A submission appends the user's message, then streams model turns.
    Function calls requested by the model are dispatched against the
    vault and their responses fed back, until the model answers without
    calling anything, a turn fails, ``stop()`` is called, or
    ``max_turns`` is reached. The conversation is saved after every
    change, including every streamed text delta.

    Args:
        codec: Builds requests and parses frames for one provider.
        transport: Opens the provider stream.
        dispatcher: Executes function calls.
        store: Persists the conversation.
        prompt: Supplies the system and user instructions.
        naming: Names new conversations in the background. Optional.
        tools: Functions offered to the model.
        allow_destructive_actions: Offer write, move and delete.
        max_turns: Model turns allowed per submission.
        listener: Receives :mod:`vaultkeeper.events` as they happen.
    """

    def __init__(
        self,
        codec: ProviderCodec,
        transport: StreamingTransport,
        dispatcher: FunctionDispatcher,
        store: ConversationStore,
        prompt: Prompt,
        naming: NamingService | None = None,
        tools: list[FunctionDefinition] | None = None,
        allow_destructive_actions: bool = False,
        max_turns: int = 50,
        listener: ChatListener | None = None,
    ):
        self.codec = codec
        self.transport = transport
        self.dispatcher = dispatcher
        self.store = store
        self.prompt = prompt
        self.naming = naming
        self.tools = list(FUNCTION_DEFINITIONS) if tools is None else tools
        self.allow_destructive_actions = allow_destructive_actions
        self.max_turns = max_turns
        self.listener = listener

        self._gate = AdmissionGate()
        self._cancel: CancellationToken | None = None
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings, listener: ChatListener | None = None) -> "ChatOrchestrator":
        """Wire the local vault, the JSON store and a provider from *settings*."""
        vault = LocalVault(settings.vault_path, exclusions=settings.exclusions)
        store = JsonConversationStore(settings.conversations_path)
        transport = StreamingTransport(
            timeout=httpx.Timeout(settings.request_timeout, connect=10.0),
        )
        namer = create_namer(settings.provider, settings.api_key, client=transport.client)
        return cls(
            codec=create_codec(settings.provider, settings.api_key, settings.model),
            transport=transport,
            dispatcher=FunctionDispatcher(vault),
            store=store,
            prompt=Prompt.for_vault(settings.vault_path),
            naming=NamingService(namer, store),
            allow_destructive_actions=settings.allow_destructive_actions,
            max_turns=settings.max_turns,
            listener=listener,
        )

    @property
    def busy(self) -> bool:
        return self._gate.locked

    async def aclose(self) -> None:
        await self.wait_background_tasks()
        await self.transport.aclose()

    async def wait_background_tasks(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, conversation: Conversation, user_text: str) -> bool:
        """Run one submission to completion.

        Returns ``False`` without doing anything when *user_text* is blank
        or another submission is in flight.
        """
        if not user_text.strip():
            return False
        ticket = self._gate.try_acquire()
        if ticket is None:
            logger.info("Submission refused: a response is already in progress")
            return False

        cancel = CancellationToken()
        self._cancel = cancel
        try:
            async with chat_span(self.codec.kind.value, self.codec.model) as span:
                try:
                    await self._run(conversation, user_text, cancel)
                except Exception as e:
                    logger.exception(f"Chat submission failed: {e}")
                    record_error(span, e)
                    if not cancel.cancelled:
                        await self._record_failure(conversation, f"Error: {e}")
        finally:
            if self._cancel is cancel:
                self._cancel = None
            self._gate.release(ticket)
            self._emit(ThoughtEvent(message=None))
            self._emit(ChatCompleteEvent(conversation=conversation))
        return True

    def stop(self) -> None:
        """Cancel the running submission and free the gate. Idempotent."""
        cancel, self._cancel = self._cancel, None
        if cancel is not None:
            logger.info("Stopping the current response")
            cancel.cancel()
        self._gate.force_release()

    async def _run(self, conversation: Conversation, user_text: str, cancel: CancellationToken) -> None:
        await self._repair_dangling_call(conversation)

        conversation.contents.append(ConversationContent(role=Role.USER, content=user_text))
        await self.store.save_conversation(conversation)

        if len(conversation.contents) == 1 and self.naming is not None:
            self._start_naming(conversation, user_text, cancel)

        for turn in range(self.max_turns):
            if cancel.cancelled:
                return
            result = await self._stream_turn(conversation, cancel, turn)
            if result.failed or cancel.cancelled:
                return

            if result.function_call is not None:
                await self._handle_function_call(conversation, result.function_call, cancel)
                if cancel.cancelled:
                    return
            elif not result.should_continue:
                return

        conversation.contents.append(
            ConversationContent(role=Role.ASSISTANT, content=MAX_TURNS_MESSAGE)
        )
        await self.store.save_conversation(conversation)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def _stream_turn(
        self, conversation: Conversation, cancel: CancellationToken, turn: int,
    ) -> TurnResult:
        state = self.codec.new_state()
        request = self.codec.build_request(
            self.prompt.system_instruction(),
            await self.prompt.user_instruction(),
            conversation.contents,
            self.tools,
            self.allow_destructive_actions,
        )

        result = TurnResult()
        entry: ConversationContent | None = None
        text = ""

        async with turn_span(self.codec.kind.value, self.codec.model, turn) as span:
            chunks = self.transport.stream(
                request, lambda frame: self.codec.parse_frame(frame, state), cancel,
            )
            async with aclosing(chunks):
                async for chunk in chunks:
                    if cancel.cancelled:
                        return result

                    if chunk.is_terminal_error:
                        message = f"Error: {chunk.error}"
                        if entry is None:
                            conversation.contents.append(
                                ConversationContent(role=Role.ASSISTANT, content=message)
                            )
                        else:
                            entry.content = message
                        await self.store.save_conversation(conversation)
                        record_error(span, chunk.error)
                        self._emit(TurnErrorEvent(error=chunk.error))
                        result.failed = True
                        return result

                    if chunk.error:
                        logger.warning(f"Skipping unreadable frame: {chunk.error}")
                        continue

                    if chunk.content:
                        text += chunk.content
                        self._emit(TextDeltaEvent(content=chunk.content))
                        if entry is None and text.strip():
                            entry = ConversationContent(role=Role.ASSISTANT)
                            conversation.contents.append(entry)
                        if entry is not None:
                            entry.content = text
                            await self.store.save_conversation(conversation)

                    if chunk.function_call is not None:
                        result.function_call = chunk.function_call
                    if chunk.should_continue:
                        result.should_continue = True

        if cancel.cancelled:
            return result

        if entry is not None and result.function_call is not None:
            cleaned = result.function_call.strip_from(text)
            if cleaned != text:
                if cleaned.strip():
                    entry.content = cleaned
                else:
                    conversation.contents.remove(entry)
                await self.store.save_conversation(conversation)
        return result

    async def _handle_function_call(
        self, conversation: Conversation, call: FunctionCall, cancel: CancellationToken,
    ) -> None:
        user_message = call.arguments.get("user_message")
        if isinstance(user_message, str) and user_message.strip():
            self._emit(ThoughtEvent(message=user_message))
        self._emit(FunctionCallEvent(name=call.name, call_id=call.tool_id, arguments=call.arguments))

        conversation.contents.append(ConversationContent(
            role=Role.ASSISTANT,
            function_call=call.to_conversation_string(),
            is_function_call=True,
            tool_id=call.tool_id,
        ))
        await self.store.save_conversation(conversation)

        async with tool_span(call.name, call.tool_id or ""):
            response = await self.dispatcher.dispatch(call, cancel)
        if cancel.cancelled:
            # left dangling; repaired by the next submission
            return

        self._append_response(conversation, response)
        await self.store.save_conversation(conversation)
        self._emit(FunctionResultEvent(
            name=response.name,
            call_id=response.tool_id,
            response=response.response,
            is_error=response.is_error,
        ))

    @staticmethod
    def _append_response(conversation: Conversation, response: FunctionResponse) -> None:
        serialized = response.to_conversation_string()
        conversation.contents.append(ConversationContent(
            role=Role.USER,
            content=serialized,
            prompt_content=serialized,
            is_function_call_response=True,
            tool_id=response.tool_id,
        ))

    async def _repair_dangling_call(self, conversation: Conversation) -> None:
        last = conversation.last()
        if last is None or not last.is_function_call:
            return
        try:
            name = FunctionCall.from_conversation_string(last.function_call).name
        except ValueError:
            name = "unknown"
        logger.info(f"Answering interrupted function call {name} ({last.tool_id})")
        self._append_response(conversation, FunctionResponse(
            name=name, response=dict(INTERRUPTED_RESPONSE), tool_id=last.tool_id,
        ))
        await self.store.save_conversation(conversation)

    async def _record_failure(self, conversation: Conversation, message: str) -> None:
        conversation.contents.append(ConversationContent(role=Role.ASSISTANT, content=message))
        try:
            await self.store.save_conversation(conversation)
        except Exception as e:
            logger.error(f"Could not save the error entry: {e}")
        self._emit(TurnErrorEvent(error=message))

    # ------------------------------------------------------------------
    # Background naming and events
    # ------------------------------------------------------------------

    def _start_naming(self, conversation: Conversation, user_text: str, cancel: CancellationToken) -> None:
        def renamed(title: str) -> None:
            self._emit(TitleChangedEvent(title=title))

        task = asyncio.create_task(
            self.naming.request_name(conversation, user_text, cancel, on_renamed=renamed)
        )
        self._background.add(task)
        task.add_done_callback(self._naming_done)

    def _naming_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Conversation naming failed: {task.exception()}")

    def _emit(self, event: ChatEvent) -> None:
        if self.listener is not None:
            self.listener(event)
