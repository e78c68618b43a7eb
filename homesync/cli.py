from __future__ import annotations

import argparse
import asyncio
import json
import os
from dataclasses import asdict, is_dataclass
from typing import Any

from homesync.config import SyncConfig, load_sync_config
from homesync.diagnostics import (
    DeviceSyncTester,
    RecreationMonitor,
    force_remove_all_devices,
    prevent_device_reappearance,
    probe_store,
)
from homesync.fallback import LocalFallbackCache
from homesync.registry import DeviceRegistry
from homesync.store import build_store
from homesync.sync_logging import set_level


def _jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        out = asdict(value)
        summary = getattr(value, "summary", None)
        if isinstance(summary, dict):
            out["summary"] = summary
        return out
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


async def _run(args: argparse.Namespace, config: SyncConfig) -> Any:
    store = build_store(config)
    await store.start()
    registry = DeviceRegistry(store, config.registry)
    monitor = RecreationMonitor(store, registry, LocalFallbackCache(config.fallback_cache_path))
    registry.start()
    try:
        if args.command == "list":
            return registry.get_devices()
        if args.command == "rooms":
            return {room: asdict(registry.get_room_stats(room)) for room in registry.get_all_rooms()}
        if args.command == "remove":
            if len(args.device_ids) == 1:
                return {"device_id": args.device_ids[0], "success": await registry.remove_device(args.device_ids[0])}
            return await registry.remove_multiple_devices(args.device_ids)
        if args.command == "remove-all":
            return await registry.remove_all_devices()
        if args.command == "force-remove-all":
            registry.stop()
            return await force_remove_all_devices(store, config.registry.settle_delay_s)
        if args.command == "prevent-reappearance":
            registry.stop()
            return await prevent_device_reappearance(store, config.registry.settle_delay_s)
        if args.command == "test-deletion":
            return await monitor.test_device_deletion(args.device_id, args.duration_ms)
        if args.command == "prevent":
            return await monitor.prevent_recreation(args.device_id, args.duration_ms)
        if args.command == "monitor":
            return await monitor.monitor_device_recreation(args.duration_ms)
        if args.command == "sources":
            return await monitor.identify_recreation_sources()
        if args.command == "sync-check":
            return await DeviceSyncTester(registry).run_full_test()
        if args.command == "probe":
            return await probe_store(store)
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        monitor.stop_monitoring()
        registry.stop()
        await store.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="homesync-admin", description="Inspect and repair the shared device registry")
    parser.add_argument("--log-level", default=os.environ.get("HOMESYNC_LOG_LEVEL", "info"))
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List cached devices")
    sub.add_parser("rooms", help="Per-room device statistics")

    remove = sub.add_parser("remove", help="Remove one or more devices")
    remove.add_argument("device_ids", nargs="+")

    sub.add_parser("remove-all", help="Remove every device through the registry")
    sub.add_parser("force-remove-all", help="Remove every device directly from the store")
    sub.add_parser("prevent-reappearance", help="Force-remove everything and check for reappearing devices")

    for name, help_text, default_ms in (
        ("test-deletion", "Delete a device and watch for it coming back", 10000),
        ("prevent", "Clear local fallback data, then run test-deletion", 10000),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("device_id")
        cmd.add_argument("--duration-ms", type=int, default=default_ms)

    monitor = sub.add_parser("monitor", help="Watch for deleted devices that reappear")
    monitor.add_argument("--duration-ms", type=int, default=30000)

    sub.add_parser("sources", help="List likely sources of device recreation")
    sub.add_parser("sync-check", help="Run the end-to-end synchronization check")
    sub.add_parser("probe", help="Check store read/write/delete permissions")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    set_level(args.log_level)

    result = asyncio.run(_run(args, load_sync_config()))
    payload = _jsonable(result)
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))

    if isinstance(payload, dict) and payload.get("success") is False:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
