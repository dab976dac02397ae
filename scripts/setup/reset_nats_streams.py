import argparse
import asyncio
from typing import Optional

from core.app_config import load_app_config
from infra.nats_client import NATSClient


async def _maybe_delete_stream(js, name: str) -> bool:
    try:
        await js.stream_info(name)
    except Exception:  # noqa: BLE001
        return False
    await js.delete_stream(name)
    return True


async def reset_streams(*, extra_streams: Optional[list[str]] = None) -> None:
    app = load_app_config()
    client = NATSClient(config=app.nats.model_dump(), protocol_version=app.protocol.version)
    streams = [client.cmd_stream, client.evt_stream]
    if extra_streams:
        streams.extend([s for s in extra_streams if isinstance(s, str) and s.strip()])

    print(f"[reset_nats_streams] NATS={client.servers} PROTOCOL_VERSION={app.protocol.version}")

    # Connect without the stream bootstrap so the old streams can be dropped first.
    await client.nc.connect(servers=client.servers)
    try:
        js = client.nc.jetstream()
        for name in streams:
            deleted = await _maybe_delete_stream(js, name)
            print(f"[reset_nats_streams] delete_stream {name}: {'Deleted' if deleted else 'Skipped (not found)'}")
    finally:
        await client.nc.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Delete the hop command/event JetStream streams.")
    parser.add_argument("--extra", action="append", default=[], help="additional stream name to delete")
    args = parser.parse_args()
    asyncio.run(reset_streams(extra_streams=args.extra))


if __name__ == "__main__":
    main()
