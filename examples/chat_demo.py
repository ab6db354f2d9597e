"""Minimal console front-end for the chat core.

Commands: /new, /list, /use <id>, /rename <title>, /delete, /quit.
Ctrl+C while an answer is streaming asks the engine to stop.
"""

import threading

from chat_core.api import service


def main() -> None:
    finished = threading.Event()

    def on_event(event):
        if event.kind == "token":
            print(event.text, end="", flush=True)
        elif event.kind == "error":
            print(f"\n[error] {event.message}")
        elif event.kind == "done":
            print()
            finished.set()

    service.subscribe(on_event)
    current = service.get_history()[0]["id"]
    print(f"Engine: {service.engine_state()}  (loading happens in the background)")

    try:
        while True:
            line = input("> ").strip()
            if not line:
                continue
            if line == "/quit":
                break
            if line == "/new":
                current = service.create_conversation()["id"]
                continue
            if line == "/list":
                for item in service.get_history():
                    mark = "*" if item["id"] == current else " "
                    print(f"{mark} {item['id']}  {item['title']}")
                continue
            if line.startswith("/use "):
                current = line[5:].strip()
                conv = service.get_conversation(current)
                for m in (conv or {}).get("messages", []):
                    print(f"{m['role']}: {m['content']}")
                continue
            if line.startswith("/rename "):
                service.rename_conversation(current, line[8:])
                continue
            if line == "/delete":
                remaining = service.delete_conversation(current)
                current = remaining[0]["id"] if remaining else service.create_conversation()["id"]
                continue

            finished.clear()
            service.start_generation(line, current)
            try:
                finished.wait()
            except KeyboardInterrupt:
                service.stop_generation()
                finished.wait()
    except (EOFError, KeyboardInterrupt):
        pass
    finally:
        service.shutdown()


if __name__ == "__main__":
    main()
