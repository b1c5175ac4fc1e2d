"""Join a room from the command line.

    python -m peer_client [ROOM_ID] --media video.mp4 [--record remote.mp4]

Without ROOM_ID a new one is generated and printed so the other side can join.
"""
import argparse
import asyncio

from constants import LOG_FILE, LOG_LEVEL, SIGNALING_URL
from errors import MediaAccessDenied
from logging_config import get_logger, setup_logging
from peer_client.call import PeerCall, generate_room_id
from peer_client.media import PlayerMedia, RemoteMedia

logger = get_logger("peer_client")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="peer_client", description="One2One peer")
    parser.add_argument("room_id", nargs="?", help="room to join (generated when omitted)")
    parser.add_argument("--url", default=SIGNALING_URL, help="signaling WebSocket URL")
    parser.add_argument("--media", required=True, help="media file or capture device")
    parser.add_argument("--format", default=None, help="ffmpeg input format for devices, e.g. v4l2 or avfoundation")
    parser.add_argument("--record", default=None, help="write the remote stream to this file")
    parser.add_argument("--no-audio", action="store_true")
    parser.add_argument("--no-video", action="store_true")
    parser.add_argument("--no-check", action="store_true", help="skip the room existence check")
    parser.add_argument("--log-level", default=LOG_LEVEL)
    return parser.parse_args(argv)


async def run(args):
    room_id = args.room_id or generate_room_id()
    logger.info(f"Room ID: {room_id}")

    call = PeerCall(
        room_id,
        PlayerMedia(args.media, format=args.format, audio=not args.no_audio, video=not args.no_video),
        remote_media=RemoteMedia(record_to=args.record),
        signaling_url=args.url,
        on_state_change=lambda state, status: logger.info(f"Status: {status}"),
    )
    try:
        await call.join(check_first=not args.no_check)
        await asyncio.Event().wait()
    except MediaAccessDenied as e:
        logger.error(e.message)
    finally:
        await call.leave()


def main(argv=None):
    args = parse_args(argv)
    setup_logging(log_level=args.log_level, log_file=LOG_FILE)
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted, left the room")


if __name__ == "__main__":
    main()
