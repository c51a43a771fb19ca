"""Console demo of the streaming chat engine."""

import sys

from chat_core.api.service import get_default_engine
from chat_core.domain.exceptions import PreconditionViolation


def main() -> None:
    engine = get_default_engine()
    for message in engine.history:
        print(f"{message.role}: {message.content}")

    while True:
        try:
            if not engine.has_credential:
                engine.set_credential(input("API Key: "))
                continue
            text = input("\nYou: ")
        except (EOFError, KeyboardInterrupt):
            break
        except PreconditionViolation as e:
            print(e.message)
            continue
        if text.strip() == "/clear":
            engine.clear_history()
            continue
        try:
            events = engine.submit(text)
        except PreconditionViolation as e:
            print(e.message)
            continue
        shown = 0
        try:
            for event in events:
                if event.kind == "assistant_partial":
                    if shown == 0:
                        sys.stdout.write("AI: ")
                    sys.stdout.write(event.text[shown:])
                    sys.stdout.flush()
                    shown = len(event.text)
                elif event.kind == "auth_required":
                    print("\n认证失败，API Key 无效。请重新输入。")
                elif event.kind == "error":
                    print(f"\n出错了: {event.text}")
            print()
        except KeyboardInterrupt:
            events.close()
            print("\n[cancelled]")


if __name__ == "__main__":
    main()
