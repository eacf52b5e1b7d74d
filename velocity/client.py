#!/usr/bin/env python3
"""
Reference speed test client
Runs latency, download and upload against a Velocity server and prints the result
"""

import asyncio
import logging
import os
import sys
import time
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 128 * 1024
READ_CHUNK_SIZE = 64 * 1024


class SpeedTestError(Exception):
    def __init__(self, status: int, body: dict):
        super().__init__(f"HTTP {status}: {body.get('error', 'Error')} - {body.get('message', '')}")
        self.status = status
        self.body = body


class SpeedTestClient:
    """Drives one full measurement session over HTTP and WebSocket"""

    def __init__(self, base_url: str, timeout: float = 60.0, chunk_size: int = UPLOAD_CHUNK_SIZE):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.chunk_size = chunk_size

    @property
    def ws_base_url(self) -> str:
        if self.base_url.startswith('https://'):
            return 'wss://' + self.base_url[len('https://'):]
        if self.base_url.startswith('http://'):
            return 'ws://' + self.base_url[len('http://'):]
        return self.base_url

    async def run(self) -> dict:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as http:
            opened = await self._request_json(http, 'POST', '/sessions')
            session_id = opened['sessionId']
            duration = opened['phases']['throughput']['durationMs'] / 1000
            logger.info(f"🎫 Session {session_id} opened (deadline {opened['deadline']})")

            try:
                latency = await self.measure_latency(http, session_id)
                logger.info(f"🏓 Ping {latency.get('medianMs')} ms, jitter {latency.get('jitterMs')} ms")

                await self.measure_download(http, session_id)
                upload = await self.measure_upload(http, session_id, duration)
                logger.info(f"⬆️ Upload {upload.get('bitsPerSecond')} bps ({upload['status']})")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error(f"❌ Speed test interrupted: {e}")

            return await self._request_json(http, 'GET', f'/sessions/{session_id}/result')

    async def measure_latency(self, http: aiohttp.ClientSession, session_id: str) -> dict:
        """Answer the server's pings until it sends the latency result"""
        url = f"{self.ws_base_url}/sessions/{session_id}/latency"
        async with http.ws_connect(url) as ws:
            async for msg in ws:
                if msg.type != aiohttp.WSMsgType.TEXT:
                    break
                data = msg.json()
                if data.get('type') == 'ping':
                    await ws.send_json({'type': 'pong', 'seq': data['seq']})
                elif data.get('type') == 'result':
                    return data
                elif data.get('type') == 'error':
                    raise SpeedTestError(ws.close_code or 0, data)
        raise SpeedTestError(0, {'error': 'ClientCancelled', 'message': 'Latency socket closed early'})

    async def measure_download(self, http: aiohttp.ClientSession, session_id: str) -> dict:
        received = 0
        async with http.get(f"{self.base_url}/sessions/{session_id}/download") as resp:
            if resp.status != 200:
                raise SpeedTestError(resp.status, await resp.json())
            async for chunk in resp.content.iter_chunked(READ_CHUNK_SIZE):
                received += len(chunk)
        logger.info(f"⬇️ Received {received / 1024 / 1024:.2f} MB")
        return await self._request_json(http, 'GET', f'/sessions/{session_id}/download/result')

    async def measure_upload(self, http: aiohttp.ClientSession, session_id: str, duration: float) -> dict:
        block = os.urandom(self.chunk_size)

        async def body():
            deadline = time.monotonic() + duration
            while time.monotonic() < deadline:
                yield block

        return await self._request_json(http, 'PUT', f'/sessions/{session_id}/upload', data=body())

    async def _request_json(self, http: aiohttp.ClientSession, method: str, path: str, **kwargs) -> dict:
        async with http.request(method, f"{self.base_url}{path}", **kwargs) as resp:
            body = await resp.json()
            if resp.status >= 400:
                raise SpeedTestError(resp.status, body)
            return body


def format_summary(result: dict) -> str:
    """Human readable one-screen summary of a Result Record"""
    data = result.get('data', {})

    def mbps(bps: Optional[int]) -> str:
        return f"{bps / 1_000_000:.2f} Mbps" if bps is not None else "n/a"

    def ms(value: Optional[float]) -> str:
        return f"{value:.1f} ms" if value is not None else "n/a"

    server = result.get('server', {})
    lines = [
        f"Status:   {result.get('status')} ({result.get('phase')})",
        f"Ping:     {ms(data.get('pingMs'))}",
        f"Jitter:   {ms(data.get('jitterMs'))}",
        f"Download: {mbps(data.get('downloadBps'))}",
        f"Upload:   {mbps(data.get('uploadBps'))}",
        f"Server:   {server.get('name', 'unknown')} ({server.get('region', 'unknown')})",
    ]
    if result.get('failureReason'):
        lines.append(f"Reason:   {result['failureReason']}")
    return "\n".join(lines)


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="Velocity Speed Test Client")
    parser.add_argument("url", nargs="?", default="http://localhost:5000", help="Server base URL")
    parser.add_argument("--timeout", type=float, default=60.0, help="Overall timeout in seconds")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    try:
        result = asyncio.run(SpeedTestClient(args.url, timeout=args.timeout).run())
    except SpeedTestError as e:
        print(f"❌ {e}")
        sys.exit(1)

    print(format_summary(result))
    sys.exit(0 if result.get('status') == 'success' else 2)


if __name__ == "__main__":
    main()
