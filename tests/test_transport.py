"""Tests for the WebSocket and bulk HTTP transports against a local aiohttp server"""

import asyncio
import json
from contextlib import asynccontextmanager

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from chillfi_client.core.exceptions import (
    AuthenticationError,
    ConnectionFailedError,
    TerminalTransferError,
    TransientNetworkError,
)
from chillfi_client.transport.bulk import UPLOAD_PATH, BulkTransferClient
from chillfi_client.transport.messages import decode_frame, encode_frame
from chillfi_client.transport.websocket import WEBSOCKET_PATH, WebSocketTransport


@asynccontextmanager
async def serve(*routes):
    app = web.Application()
    app.add_routes(list(routes))
    server = TestServer(app)
    await server.start_server()
    try:
        yield server
    finally:
        await server.close()


# =============================================================================
# Call channel
# =============================================================================

def socket_route(token="good-token", close_after=None):
    """Echo server: answers every frame with its data plus success=True."""
    async def handler(request):
        if request.headers.get("Authorization") != f"Bearer {token}":
            return web.Response(status=401)

        ws = web.WebSocketResponse()
        await ws.prepare(request)
        handled = 0
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            frame = decode_frame(msg.data)
            await ws.send_str(encode_frame(frame.event, {**frame.data, "success": True}))
            handled += 1
            if close_after is not None and handled >= close_after:
                await ws.close()
        return ws

    return web.get(WEBSOCKET_PATH, handler)


class TestWebSocketTransport:
    """Opening, messaging and closing the call channel"""

    @pytest.mark.asyncio
    async def test_send_and_receive(self):
        received = []
        async with serve(socket_route()) as server:
            transport = WebSocketTransport(str(server.make_url(WEBSOCKET_PATH)))
            transport.set_handlers(received.append, lambda reason: None)

            await transport.open("good-token")
            await transport.send("song:get", {"requestId": "r1", "songId": 3})
            for _ in range(100):
                if received:
                    break
                await asyncio.sleep(0.01)
            await transport.close()

        assert received[0].event == "song:get"
        assert received[0].request_id == "r1"
        assert received[0].data["success"] is True
        assert not transport.is_open

    @pytest.mark.asyncio
    async def test_rejected_token(self):
        async with serve(socket_route()) as server:
            transport = WebSocketTransport(str(server.make_url(WEBSOCKET_PATH)))

            with pytest.raises(AuthenticationError):
                await transport.open("bad-token")
            await transport.close()

    @pytest.mark.asyncio
    async def test_unreachable_server(self):
        transport = WebSocketTransport("ws://127.0.0.1:1/ws")

        with pytest.raises(ConnectionFailedError):
            await transport.open("good-token")
        await transport.close()

    @pytest.mark.asyncio
    async def test_peer_close_is_reported_once(self):
        """Test the close handler fires when the server hangs up"""
        closes = []
        async with serve(socket_route(close_after=1)) as server:
            transport = WebSocketTransport(str(server.make_url(WEBSOCKET_PATH)))
            transport.set_handlers(lambda message: None, closes.append)

            await transport.open("good-token")
            await transport.send("song:list", {"requestId": "r1"})
            for _ in range(100):
                if closes:
                    break
                await asyncio.sleep(0.01)
            await transport.close()

        assert len(closes) == 1
        assert not transport.is_open

    @pytest.mark.asyncio
    async def test_deliberate_close_is_silent(self):
        closes = []
        async with serve(socket_route()) as server:
            transport = WebSocketTransport(str(server.make_url(WEBSOCKET_PATH)))
            transport.set_handlers(lambda message: None, closes.append)

            await transport.open("good-token")
            await transport.close()
            await asyncio.sleep(0.05)

        assert closes == []

    @pytest.mark.asyncio
    async def test_send_when_closed(self):
        transport = WebSocketTransport("ws://127.0.0.1:1/ws")

        with pytest.raises(ConnectionFailedError, match="not open"):
            await transport.send("song:list", {})


# =============================================================================
# Bulk channel
# =============================================================================

def upload_route(status=200, body=None, received=None):
    async def handler(request):
        form = await request.post()
        if received is not None:
            received.append({
                "authorization": request.headers.get("Authorization"),
                "filename": form["files"].filename,
                "content": form["files"].file.read(),
                "metadata": json.loads(form["metadata"]),
            })
        if body is None:
            payload = {
                "success": True,
                "results": [{"success": True, "filename": form["files"].filename, "songId": 12}],
                "uploaded": 1,
                "failed": 0,
            }
            return web.json_response(payload, status=status)
        return web.Response(status=status, text=body)

    return web.post(UPLOAD_PATH, handler)


@pytest.fixture
def song_file(tmp_path):
    path = tmp_path / "01 - Intro.flac"
    path.write_bytes(b"fLaC" + bytes(range(256)) * 40)
    return path


class TestBulkTransferClient:
    """Whole-file uploads and failure classification"""

    @pytest.mark.asyncio
    async def test_upload(self, song_file):
        """Test the file, metadata and token reach the server"""
        received = []
        progress = []
        async with serve(upload_route(received=received)) as server:
            client = BulkTransferClient(str(server.make_url("")), "good-token", read_block_size=4096)
            result = await client.upload(song_file, {"title": "Intro"}, on_progress=progress.append)
            await client.close()

        assert result == {"success": True, "filename": "01 - Intro.flac", "songId": 12}
        assert received[0]["authorization"] == "Bearer good-token"
        assert received[0]["filename"] == "01 - Intro.flac"
        assert received[0]["content"] == song_file.read_bytes()
        assert received[0]["metadata"] == [{"title": "Intro"}]
        assert progress == sorted(progress)
        assert progress[-1] == 1.0
        assert len(progress) == 3

    @pytest.mark.asyncio
    async def test_filename_sent_unescaped(self, song_file):
        """Test the part header carries the file name as it is on disk"""
        dispositions = []

        async def handler(request):
            reader = await request.multipart()
            async for part in reader:
                dispositions.append(part.headers["Content-Disposition"])
                await part.read()
            return web.json_response({"success": True, "results": [{"success": True, "songId": 1}]})

        async with serve(web.post(UPLOAD_PATH, handler)) as server:
            client = BulkTransferClient(str(server.make_url("")), "t")
            await client.upload(song_file, {})
            await client.close()

        assert dispositions == [
            'form-data; name="files"; filename="01 - Intro.flac"',
            'form-data; name="metadata"',
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [502, 503, 504, 429])
    async def test_gateway_errors_are_transient(self, song_file, status):
        async with serve(upload_route(status=status, body="busy")) as server:
            client = BulkTransferClient(str(server.make_url("")), "t")
            with pytest.raises(TransientNetworkError):
                await client.upload(song_file, {})
            await client.close()

    @pytest.mark.asyncio
    async def test_rejection_is_terminal(self, song_file):
        async with serve(upload_route(status=413, body="too big")) as server:
            client = BulkTransferClient(str(server.make_url("")), "t")
            with pytest.raises(TerminalTransferError, match=r"Upload failed \(413\)"):
                await client.upload(song_file, {})
            await client.close()

    @pytest.mark.asyncio
    async def test_invalid_json_is_terminal(self, song_file):
        async with serve(upload_route(body="<html>oops</html>")) as server:
            client = BulkTransferClient(str(server.make_url("")), "t")
            with pytest.raises(TerminalTransferError, match="Invalid response format"):
                await client.upload(song_file, {})
            await client.close()

    @pytest.mark.asyncio
    async def test_per_file_rejection(self, song_file):
        body = json.dumps({
            "success": True,
            "results": [{"success": False, "filename": song_file.name, "error": "Unsupported file type"}],
        })
        async with serve(upload_route(body=body)) as server:
            client = BulkTransferClient(str(server.make_url("")), "t")
            with pytest.raises(TerminalTransferError, match="Unsupported file type"):
                await client.upload(song_file, {})
            await client.close()

    @pytest.mark.asyncio
    async def test_connection_refused_is_transient(self, song_file):
        client = BulkTransferClient("http://127.0.0.1:1", "t")

        with pytest.raises(TransientNetworkError, match="Network error"):
            await client.upload(song_file, {})
        await client.close()

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        client = BulkTransferClient("http://127.0.0.1:1", "t")

        with pytest.raises(TerminalTransferError, match="Cannot read file"):
            await client.upload(tmp_path / "gone.mp3", {})
        await client.close()
