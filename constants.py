import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 3001))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

# Comma separated list, "*" allows every origin
ALLOWED_ORIGINS = [origin.strip() for origin in os.getenv("ALLOWED_ORIGINS", "*").split(",") if origin.strip()]

SERVICE_NAME = "One2One Signaling Server"

SIGNALING_URL = os.getenv("SIGNALING_URL", f"ws://localhost:{PORT}/ws")

# Seconds the client waits for a check-room ack before joining anyway
CHECK_ROOM_TIMEOUT = float(os.getenv("CHECK_ROOM_TIMEOUT", 2.0))

ROOM_ID_LENGTH = 8

DEFAULT_STUN_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:global.stun.twilio.com:3478",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
)
STUN_SERVERS = [url.strip() for url in os.getenv("STUN_SERVERS", ",".join(DEFAULT_STUN_SERVERS)).split(",") if url.strip()]

TURN_SERVER_URL = os.getenv("TURN_SERVER_URL", None)
TURN_USERNAME = os.getenv("TURN_USERNAME", None)
TURN_CREDENTIAL = os.getenv("TURN_CREDENTIAL", None)
