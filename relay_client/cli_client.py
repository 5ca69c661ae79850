#!/usr/bin/env python3
"""
CLI Client for the End-to-End Encrypted Relay Chat

Provides a command-line interface for:
- Connecting to a relay and receiving an ephemeral session id
- Ephemeral ECDH key exchange with peers, by session id
- AES-GCM encrypted messaging through the relay
"""

import os
import sys
import json
import asyncio
import argparse
from typing import Optional
from datetime import datetime
import websockets
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from relay_client.session import ClientSession, ReceiveError, KeyRequestTimeout


DEFAULT_URL = "ws://localhost:3000/"
DEFAULT_KEY_TIMEOUT = 10.0

HELP_TEXT = """Commands:
  /to <session id> - Choose who to message
  /id - Show your session id
  /peers - List peers with an established key
  /help - Show this help
  /quit - Quit application"""


class ChatClient:
    """
    End-to-end encrypted relay chat client.
    """

    def __init__(self, url: str = DEFAULT_URL, key_timeout: Optional[float] = DEFAULT_KEY_TIMEOUT):
        """
        Initialize chat client.

        Args:
            url: WebSocket URL of the relay
            key_timeout: Seconds to wait for a peer's public key
        """
        self.url = url
        self.websocket = None
        self.running = False
        self.current_chat: Optional[str] = None
        self.session = ClientSession(
            self._send_frame,
            on_message=self._show_message,
            on_error=self._show_error,
            key_request_timeout=key_timeout,
        )

    async def _send_frame(self, frame: dict):
        await self.websocket.send(json.dumps(frame))

    def _show_message(self, sender: str, text: str):
        timestamp = datetime.now().strftime("%H:%M")
        if sender == self.current_chat:
            print(f"\n[{timestamp}] {sender}: {text}")
        else:
            print(f"\n[New message from {sender}]: {text}")

    def _show_error(self, error: Exception):
        if isinstance(error, KeyRequestTimeout):
            print(f"\n[{error.peer_id} did not answer; message not sent]")
        elif isinstance(error, ReceiveError):
            print(f"\n[Failed to decrypt message from {error.sender_id}: {error.reason}]")
        else:
            print(f"\n[Error: {error}]")

    async def connect(self) -> bool:
        """Connect to the relay and wait for our session id"""
        try:
            self.websocket = await websockets.connect(self.url)
            await self.session.handle_frame(await self.websocket.recv())
        except (OSError, websockets.exceptions.WebSocketException) as e:
            print(f"WebSocket connection error: {e}")
            return False

        if self.session.session_id is None:
            print("Relay did not assign a session id")
            return False
        print(f"Connected. Your session id is {self.session.session_id}")
        return True

    async def receive_messages(self):
        """Background task to receive frames"""
        try:
            async for raw in self.websocket:
                await self.session.handle_frame(raw)
        except websockets.exceptions.ConnectionClosedError as e:
            print(f"\nConnection lost: {e}")
        finally:
            print("\nConnection closed")
            self.running = False

    async def send_message(self, peer: str, message: str):
        """
        Send an encrypted message.

        Args:
            peer: Recipient session id
            message: Message to send
        """
        try:
            if not await self.session.send_message(peer, message):
                print(f"[Waiting for {peer}'s public key...]")
        except websockets.exceptions.ConnectionClosed:
            print("Failed to send message: connection closed")
            self.running = False

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True

        # Start receive task
        receive_task = asyncio.create_task(self.receive_messages())

        # Interactive prompt
        prompt = PromptSession()

        print()
        print(HELP_TEXT)
        print()

        try:
            while self.running:
                try:
                    if self.current_chat:
                        prompt_text = f"[{self.current_chat}] > "
                    else:
                        prompt_text = "> "

                    with patch_stdout():
                        user_input = await prompt.prompt_async(prompt_text)

                    user_input = user_input.strip()
                    if not user_input:
                        continue

                    if user_input.startswith("/"):
                        self._handle_command(user_input)
                    elif self.current_chat:
                        await self.send_message(self.current_chat, user_input)
                    else:
                        print("No recipient. Use /to <session id> first.")

                except KeyboardInterrupt:
                    break
                except EOFError:
                    break

        finally:
            self.running = False
            receive_task.cancel()
            self.session.close()
            if self.websocket:
                await self.websocket.close()

    def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()

        if cmd == "/to" and len(parts) == 2:
            self.current_chat = parts[1].strip()
            print(f"Messaging {self.current_chat}. Type '/help' for commands.")
        elif cmd == "/id":
            print(f"Your session id is {self.session.session_id}")
        elif cmd == "/peers":
            peers = self.session.engine.peer_ids()
            print("Peers:" if peers else "No peers yet")
            for peer in peers:
                print(f"  - {peer}")
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="End-to-end encrypted relay chat client")
    parser.add_argument(
        "--url",
        default=os.environ.get("RELAY_URL", DEFAULT_URL),
        help="Relay WebSocket URL (default: %(default)s, or $RELAY_URL)",
    )
    parser.add_argument(
        "--key-timeout",
        type=float,
        default=DEFAULT_KEY_TIMEOUT,
        help="Seconds to wait for a peer's public key; 0 waits forever (default: %(default)s)",
    )
    return parser.parse_args(argv)


async def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)
    client = ChatClient(args.url, key_timeout=args.key_timeout or None)

    print("=" * 50)
    print("End-to-End Encrypted Relay Chat")
    print("=" * 50)
    print()

    if await client.connect():
        await client.run_interactive()

    print("\nGoodbye!")


def run():
    """Console entry point"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
