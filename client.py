"""
Command-line chat client for the modelbridge relay.
Finds the relay by probing its candidate ports; without one it answers with
clearly labelled simulated responses.
"""

import argparse
import logging
import sys
from typing import Dict, List

from config import get_config
from utils.networking.discovery import ClientDiscovery, NoServerFound
from utils.networking.relay_client import RelayClient, RelayRequestError

ROLE_COLORS = {
    "User": "1;34",
    "Assistant": "1;32",
}


def format_message(message: Dict) -> str:
    """Format a message for display."""
    role = message["role"].capitalize()
    color = ROLE_COLORS.get(role, "1;33")
    return f"\033[{color}m{role}: \033[0m{message['content']}"


def send(client: RelayClient, messages: List[Dict], model_id: str, stream: bool) -> str:
    """Send the conversation and print the reply; returns the reply text."""
    if not stream:
        reply = client.chat(messages, model_id)["message"]["content"]
        print(format_message({"role": "assistant", "content": reply}))
        return reply

    print(f"\033[{ROLE_COLORS['Assistant']}mAssistant: \033[0m", end="", flush=True)
    parts = []
    try:
        for chunk in client.stream_chat(messages, model_id):
            parts.append(chunk)
            print(chunk, end="", flush=True)
    except KeyboardInterrupt:
        if client.last_session_id:
            client.cancel(client.last_session_id)
        print("\n[cancelled]")
    print()
    return "".join(parts)


def chat_loop(client: RelayClient, model_id: str, stream: bool) -> None:
    """Interactive chat until the user types 'exit' or presses Ctrl+D."""
    print("\033[1;36m=== modelbridge chat ===\033[0m")
    print(f"Model: {model_id}. Type 'exit' to quit.\n")
    messages: List[Dict] = []
    while True:
        try:
            user_message = input("You: ")
        except (EOFError, KeyboardInterrupt):
            print("\nChat session ended by user.")
            return
        if user_message.strip().lower() in {"exit", "quit"}:
            print("Ending chat session.")
            return
        if not user_message.strip():
            continue

        messages.append({"role": "user", "content": user_message})
        try:
            reply = send(client, messages, model_id, stream)
        except RelayRequestError as exc:
            print(f"Error: {exc.message}")
            messages.pop()
            continue
        messages.append({"role": "assistant", "content": reply})


def detect(discovery: ClientDiscovery) -> int:
    try:
        print(discovery.resolve_base_url())
    except NoServerFound as exc:
        ports = ", ".join(str(port) for port in exc.attempted_ports)
        print(f"No relay found (tried ports {ports})", file=sys.stderr)
        return 1
    return 0


def main(argv=None) -> int:
    """Main entry point"""
    config = get_config()
    parser = argparse.ArgumentParser(description="modelbridge CLI chat client")
    parser.add_argument("--message", help="Single message mode: send a message and exit")
    parser.add_argument("--model", default=config.get("model.default_model"), help="Model id to chat with")
    parser.add_argument("--no-stream", dest="stream", action="store_false", help="Wait for the full reply")
    parser.add_argument("--detect", action="store_true", help="Print the detected relay URL and exit")
    parser.add_argument("--verbose", action="store_true", help="Log discovery and request details")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    discovery = ClientDiscovery.from_config(config)
    if args.detect:
        return detect(discovery)

    client = RelayClient(discovery, timeout=config.get("discovery.request_timeout", 30.0))
    if args.message:
        try:
            send(client, [{"role": "user", "content": args.message}], args.model, args.stream)
        except RelayRequestError as exc:
            print(f"Error: {exc.message}", file=sys.stderr)
            return 1
        return 0

    chat_loop(client, args.model, args.stream)
    return 0


if __name__ == "__main__":
    sys.exit(main())
