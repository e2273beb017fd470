#!/usr/bin/env python3
"""Tests for the service entry point."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

import main
from gmp_relayer.relayer import GMPRelayer


class TestServe:
    """Tests for running the relayer alongside the status API."""

    @pytest.mark.asyncio
    async def test_api_exit_stops_relayer(self, relayer_config, clients, dedup):
        """Test the relayer drains and stops when uvicorn exits on a signal."""
        relayer = GMPRelayer(relayer_config, clients=clients, dedup=dedup)

        with patch("main.uvicorn") as mock_uvicorn:
            server = mock_uvicorn.Server.return_value
            # uvicorn returns from serve() once it has handled SIGINT/SIGTERM
            server.serve = AsyncMock(return_value=None)

            await asyncio.wait_for(main.serve(relayer, 3000, "INFO"), timeout=5)

        assert relayer.running is False
        assert relayer.shutdown_event.is_set()
        assert server.should_exit is True
        clients["crossfi"].close.assert_awaited_once()
        clients["ethereum"].close.assert_awaited_once()
