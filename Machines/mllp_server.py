#!/usr/bin/env python3
"""Minimal MLLP receiving hub for local runs: splits frames, counts them, ACKs each one."""
import argparse
import asyncio
import logging

from hl7_common import CR, EB, FIELD_SEP, SB, frame, seg, ts

logger = logging.getLogger(__name__)

HOST = "127.0.0.1"
PORT = 9899


def split_frames(buffer: bytes) -> tuple[list[bytes], bytes]:
    """Pull every complete SB..EB CR frame off the front of `buffer`."""
    messages = []
    while True:
        start = buffer.find(SB)
        if start < 0:
            return messages, b""
        end = buffer.find(EB + CR, start)
        if end < 0:
            return messages, buffer[start:]
        messages.append(buffer[start + 1:end])
        buffer = buffer[end + 2:]


def control_id(hl7_msg: str) -> str:
    msh = hl7_msg.split("\r", 1)[0].split(FIELD_SEP)
    return msh[9] if len(msh) > 9 and msh[0] == "MSH" else ""


def build_ack(msg_control_id: str) -> bytes:
    return frame(
        seg("MSH", "^~\\&", "MLLP_SERVER", "TEST_FAC", "", "", ts(), "", "ACK", msg_control_id, "P", "2.6")
        + seg("MSA", "AA", msg_control_id)
    )


class MLLPHub:
    def __init__(self, host: str = HOST, port: int = PORT, quiet: bool = False, ack: bool = True, keep: bool = False):
        self.host = host
        self.port = port
        self.quiet = quiet
        self.ack = ack
        self.frames = 0
        self.connections = 0
        self.received: list[str] = []
        self.keep = keep
        self.server = None
        self._writers: set[asyncio.StreamWriter] = set()

    async def start(self) -> int:
        self.server = await asyncio.start_server(self._handle, self.host, self.port)
        self.port = self.server.sockets[0].getsockname()[1]
        logger.info("MLLP server listening on %s:%d", self.host, self.port)
        return self.port

    def disconnect_all(self):
        """Hang up on every connected client."""
        for writer in list(self._writers):
            writer.close()

    async def close(self):
        if self.server is not None:
            self.server.close()
            self.disconnect_all()
            await self.server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.connections += 1
        self._writers.add(writer)
        peer = writer.get_extra_info("peername")
        logger.info("Connected by %s", peer)
        buffer = b""
        try:
            while data := await reader.read(4096):
                messages, buffer = split_frames(buffer + data)
                for raw in messages:
                    hl7_msg = raw.decode("utf-8", errors="replace")
                    self.frames += 1
                    if self.keep:
                        self.received.append(hl7_msg)
                    if not self.quiet:
                        logger.info("--- HL7 message received from %s ---\n%s", peer, hl7_msg.replace("\r", "\n"))
                    if self.ack:
                        writer.write(build_ack(control_id(hl7_msg)))
                await writer.drain()
        except ConnectionError as exc:
            logger.info("%s dropped: %s", peer, exc)
        finally:
            self.connections -= 1
            self._writers.discard(writer)
            writer.close()


async def serve(host: str, port: int, quiet: bool):
    hub = MLLPHub(host, port, quiet)
    await hub.start()
    try:
        while True:
            await asyncio.sleep(10)
            logger.info("%d frames from %d open connections", hub.frames, hub.connections)
    finally:
        await hub.close()


def main():
    p = argparse.ArgumentParser(description="MLLP receiving hub (development sink)")
    p.add_argument("--host", default=HOST)
    p.add_argument("--port", type=int, default=PORT)
    p.add_argument("--quiet", action="store_true", help="Only log frame counts")
    args = p.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    try:
        asyncio.run(serve(args.host, args.port, args.quiet))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
