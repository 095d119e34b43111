"""Chat with your vault from the terminal.

    $ export ANTHROPIC_API_KEY=...
    $ python -m vaultkeeper --vault ~/notes

Ctrl-C while a response is streaming stops it; Ctrl-C at the prompt
exits.
"""

import argparse
import asyncio
import logging
import signal
import sys

from vaultkeeper.chat import ChatOrchestrator
from vaultkeeper.config import Settings, configure_logging
from vaultkeeper.conversation import Conversation
from vaultkeeper.events import (
    ChatEvent,
    FunctionCallEvent,
    FunctionResultEvent,
    TextDeltaEvent,
    ThoughtEvent,
    TitleChangedEvent,
    TurnErrorEvent,
)
from vaultkeeper.provider import ProviderKind

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="vaultkeeper", description="Chat with your notes vault")
    parser.add_argument("--provider", choices=[p.value for p in ProviderKind], default=None)
    parser.add_argument("--model", default=None)
    parser.add_argument("--vault", default=None, help="Vault directory (default: current directory)")
    parser.add_argument("--conversation", default=None, help="Conversation file to continue")
    parser.add_argument(
        "--allow-destructive", action="store_true", default=None,
        help="Let the model write, move and delete files",
    )
    parser.add_argument("--max-turns", type=int, default=None)
    parser.add_argument("--trace", action="store_true", help="Enable OpenTelemetry spans")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def print_event(event: ChatEvent) -> None:
    if isinstance(event, TextDeltaEvent):
        print(event.content, end="", flush=True)
    elif isinstance(event, ThoughtEvent) and event.message:
        print(f"\n  ({event.message})", flush=True)
    elif isinstance(event, FunctionCallEvent):
        print(f"\n  [{event.name}]", flush=True)
    elif isinstance(event, FunctionResultEvent) and event.is_error:
        print(f"  [{event.name} failed: {event.response.get('error')}]", flush=True)
    elif isinstance(event, TurnErrorEvent):
        print(f"\n{event.error}", file=sys.stderr, flush=True)
    elif isinstance(event, TitleChangedEvent):
        logger.info(f"Conversation titled {event.title!r}")


async def respond(orchestrator: ChatOrchestrator, conversation: Conversation, user_input: str) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.stop)
    except (NotImplementedError, RuntimeError):
        # no signal handlers on this platform, Ctrl-C exits instead
        pass
    try:
        await orchestrator.submit(conversation, user_input)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
    print("\n")


async def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    configure_logging(logging.INFO if args.verbose else logging.WARNING)

    settings = Settings.from_env(
        provider=args.provider,
        model=args.model,
        vault_path=args.vault,
        allow_destructive_actions=args.allow_destructive,
        max_turns=args.max_turns,
    )
    if not settings.api_key:
        sys.exit(f"No API key configured for {settings.provider.value}")

    if args.trace:
        from vaultkeeper.instrumentation import instrument
        instrument()

    orchestrator = ChatOrchestrator.from_settings(settings, listener=print_event)
    if args.conversation:
        conversation = await orchestrator.store.load_conversation(args.conversation)
    else:
        conversation = Conversation()

    print(f"Vaultkeeper ({settings.provider.value}, {settings.resolved_model})\n")
    try:
        while True:
            try:
                user_input = input("You: ")
            except (KeyboardInterrupt, EOFError):
                print("\nGoodbye!")
                break
            if user_input.strip():
                await respond(orchestrator, conversation, user_input)
    finally:
        await orchestrator.aclose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
