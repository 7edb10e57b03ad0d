from __future__ import annotations

"""Channel and server construction shared by the gRPC transports."""

from concurrent import futures

import grpc

from ..config import GrpcSettings


def _compression(settings: GrpcSettings) -> grpc.Compression:
    if settings.compression == "gzip":
        return grpc.Compression.Gzip
    return grpc.Compression.NoCompression


def create_channel(target: str, settings: GrpcSettings) -> grpc.Channel:
    """
    Create an insecure channel with options derived from GrpcSettings.

    ``target`` is ``host:port`` or ``unix:///path``.
    """
    return grpc.insecure_channel(
        target,
        options=settings.channel_options(),
        compression=_compression(settings),
    )


def create_server(settings: GrpcSettings, handlers: list[grpc.GenericRpcHandler]) -> grpc.Server:
    server = grpc.server(
        futures.ThreadPoolExecutor(max_workers=settings.max_workers),
        handlers=handlers,
        options=settings.channel_options(),
        compression=_compression(settings),
    )
    return server


def bind_and_start(server: grpc.Server, bind: str) -> int:
    """Bind ``server`` to ``bind`` (``host:port``, port 0 picks one) and start it. Returns the port."""
    port = server.add_insecure_port(bind)
    if port == 0 and not bind.startswith("unix:"):
        raise RuntimeError(f"Failed to bind gRPC server to {bind}")
    server.start()
    return port
