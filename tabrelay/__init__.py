"""tabrelay - drive a live browser tab over CDP through a relay.

Components:
- Relay: switchboard multiplexing CDP clients onto one extension link
- Bridge: browser-side debugger attachments forwarding to the relay
- Client Connector: automation-facing CDP client with reconnection
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
