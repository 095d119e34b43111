"""Library example: a read-only research assistant over a vault.

Demonstrates:
- Wiring ChatOrchestrator by hand instead of from Settings
- Listening to chat events to show function calls as they happen
- Continuing a saved conversation across runs
- Console tracing with OpenTelemetry

Usage:
    uv run --env-file=.env examples/vault_chat_example.py --vault ~/notes --provider gemini --trace
"""

import argparse
import asyncio
import os

from vaultkeeper import (
    ChatOrchestrator,
    Conversation,
    FunctionDispatcher,
    JsonConversationStore,
    LocalVault,
    ProviderKind,
    StreamingTransport,
    configure_logging,
    create_codec,
)
from vaultkeeper.config import API_KEY_ENV
from vaultkeeper.events import ChatEvent, FunctionCallEvent, TextDeltaEvent
from vaultkeeper.prompt import CONVERSATIONS_DIR, Prompt


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from vaultkeeper.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


def show(event: ChatEvent) -> None:
    if isinstance(event, TextDeltaEvent):
        print(event.content, end="", flush=True)
    elif isinstance(event, FunctionCallEvent):
        print(f"\n-> {event.name}({event.arguments})", flush=True)


async def main():
    parser = argparse.ArgumentParser(description="Vault research assistant")
    parser.add_argument("--vault", required=True)
    parser.add_argument("--provider", choices=[p.value for p in ProviderKind], default="claude")
    parser.add_argument("--model", default=None)
    parser.add_argument("--resume", default=None, help="Saved conversation to continue")
    parser.add_argument("--trace", action="store_true")
    args = parser.parse_args()

    configure_logging(log_file=None)
    if args.trace:
        setup_tracing("vault-research")

    kind = ProviderKind(args.provider)
    vault = LocalVault(args.vault, exclusions=["private/**"])
    store = JsonConversationStore(vault.root / CONVERSATIONS_DIR)

    orchestrator = ChatOrchestrator(
        codec=create_codec(kind, os.environ[API_KEY_ENV[kind]], args.model),
        transport=StreamingTransport(),
        dispatcher=FunctionDispatcher(vault),
        store=store,
        prompt=Prompt.for_vault(vault.root),
        allow_destructive_actions=False,
        max_turns=10,
        listener=show,
    )

    conversation = await store.load_conversation(args.resume) if args.resume else Conversation()
    print(f"Researching {vault.root}\n")

    try:
        while True:
            try:
                user_input = input("You: ")
            except (KeyboardInterrupt, EOFError):
                print("\nGoodbye!")
                break
            await orchestrator.submit(conversation, user_input)
            print("\n")
    finally:
        await orchestrator.aclose()
        if store.current_path is not None:
            print(f"Saved to {store.current_path}")


if __name__ == "__main__":
    asyncio.run(main())
