"""Application-wide configuration constants."""

import os
import socket
import uuid

# --- Wire protocol ---
DISCOVERY_PORT = 38899  # UDP, bulbs listen here for requests and registration
BROADCAST_ADDRESS = "255.255.255.255"
DISCOVERY_INTERVAL = 5  # seconds between registration broadcasts
REQUEST_TIMEOUT = 2.0  # seconds to wait for a directed reply

# --- Networking ---
API_HOST = "0.0.0.0"
API_PORT = 8765


def _detect_host_ip() -> str:
    """Best-effort lookup of the IPv4 address used for the default route."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packet is sent for a UDP connect
        sock.connect(("8.8.8.8", 80))
        return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        sock.close()


def _detect_host_mac() -> bytes:
    return uuid.getnode().to_bytes(6, "big")


# --- Identity (registration payload sent to bulbs) ---
HOME_ID = int(os.environ.get("WIZ_HOME_ID", "0"))
HOST_IP = os.environ.get("WIZ_HOST_IP") or _detect_host_ip()
_HOST_MAC_ENV = os.environ.get("WIZ_HOST_MAC")
HOST_MAC = (
    bytes.fromhex(_HOST_MAC_ENV.replace(":", "").replace("-", ""))
    if _HOST_MAC_ENV
    else _detect_host_mac()
)
