from __future__ import annotations

import argparse
import os
import sys
import uuid
from typing import List, Optional

from .client.consumer import ChatStreamClient, StreamConsumer
from .client.reconciler import ConversationReconciler, TurnState
from .services.streaming import CONTENT, ERROR


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Stream a voice-styled chat reply in the terminal")
    parser.add_argument("message", help="Text to send")
    parser.add_argument("--base-url", default=os.getenv("VOICECHAT_API_URL", "http://localhost:8000"))
    parser.add_argument("--token", default=os.getenv("VOICECHAT_TOKEN"))
    parser.add_argument("--conversation", help="Existing conversation id; a new one is created if omitted")
    parser.add_argument("--model", default=None)
    parser.add_argument("--voice-profile", default=None)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    client = ChatStreamClient(base_url=args.base_url, token=args.token)
    conversation_id = args.conversation or client.create_conversation()["conversation_id"]

    reconciler = ConversationReconciler(conversation_id)
    turn = reconciler.submit(args.message, correlation_id=uuid.uuid4().hex)
    consumer = StreamConsumer(
        conversation_id,
        typing=reconciler.typing,
        on_refresh=lambda cid: reconciler.apply_persisted(client.list_messages(cid)),
        on_event=reconciler.listener(turn.correlation_id),
    )
    reconciler.mark_sent(turn.correlation_id)
    try:
        for event in client.stream(
            conversation_id,
            args.message,
            consumer=consumer,
            model=args.model,
            voice_profile_id=args.voice_profile,
            client_message_id=turn.correlation_id,
        ):
            if event.type == CONTENT:
                sys.stdout.write(event.content)
                sys.stdout.flush()
            elif event.type == ERROR:
                sys.stderr.write(f"\n{event.error}\n")
    except KeyboardInterrupt:
        client.stop(conversation_id)
        reconciler.mark_cancelled(turn.correlation_id)
        sys.stderr.write("\n[stopped]\n")
    sys.stdout.write("\n")
    print(f"conversation: {conversation_id}")
    return 1 if turn.state == TurnState.FAILED else 0


if __name__ == "__main__":
    sys.exit(main())
