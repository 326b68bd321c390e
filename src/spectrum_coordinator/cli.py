#!/usr/bin/env python3
"""
Command Line Interface for Spectrum Coordinator.
"""

import sys
import json
import time
import logging
import argparse
from collections import Counter

from .config import CoordinatorConfig
from .coordinator import Coordinator
from .data.snapshot import SnapshotStore
from .errors import CoordinatorError
from .scheduling.dispatch import LoopbackChannel

logger = logging.getLogger(__name__)


def _run_daemon(config: CoordinatorConfig) -> int:
    coordinator = Coordinator(config, channel=LoopbackChannel())
    if coordinator.restore_snapshot():
        print(f"Restored state from {config.snapshot_path}")
    coordinator.start()
    print("Spectrum coordinator running (Ctrl-C to stop)")
    try:
        while True:
            time.sleep(config.sweep_interval_s)
            logger.debug(f"Status: {coordinator.status()}")
    except KeyboardInterrupt:
        print("Shutting down")
    finally:
        coordinator.close()
    return 0


def _print_status(config: CoordinatorConfig) -> int:
    if not config.snapshot_path:
        print("No snapshot_path configured; nothing to report")
        return 1
    snapshot = SnapshotStore(config.snapshot_path).load()
    if snapshot is None:
        print(f"No snapshot at {config.snapshot_path}")
        return 1

    nodes = snapshot.registry.get('nodes', {})
    print(f"Snapshot taken at {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(snapshot.taken_at))}")
    print(f"Nodes: {len(nodes)}")
    for node_id in sorted(nodes):
        node = nodes[node_id]
        devices = node.get('devices', {})
        reserved = sum(1 for d in devices.values() if d.get('reserved_by'))
        print(f"  {node_id:<20} {node.get('liveness', '?'):<8} tier={node.get('sync_tier', '?'):<9} "
              f"devices={len(devices)} reserved={reserved}")

    states = Counter(job['status'] for job in snapshot.jobs)
    print(f"Jobs: {len(snapshot.jobs)} "
          + " ".join(f"{state}={count}" for state, count in sorted(states.items())))
    for job in snapshot.jobs:
        if job['status'] in ('completed', 'cancelled'):
            continue
        active = [f"{a['node_id']}/{a['device_id']}" for a in job.get('allocations', [])
                  if a.get('released_at') is None]
        line = f"  {job['job_id']:<14} {job['job_type']:<18} {job['status']:<10} prio={job['priority']}"
        if active:
            line += f" on {', '.join(active)}"
        if job.get('failure_reason'):
            line += f" [{job['failure_reason']}]"
        print(line)
    return 0


def main():
    """Main entry point for spectrum-coordinator command."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(
        description='Spectrum Coordinator - Scheduling core for distributed RF sensors',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Daemon command
    daemon_parser = subparsers.add_parser('daemon', help='Run coordinator daemon')
    daemon_parser.add_argument('--config', '-c', required=True, help='Configuration file')
    daemon_parser.add_argument('--debug', '-d', action='store_true', help='Enable debug logging')

    # Status command
    status_parser = subparsers.add_parser('status', help='Show persisted coordinator state')
    status_parser.add_argument('--config', '-c', required=True, help='Configuration file')

    # Config check command
    check_parser = subparsers.add_parser('check-config', help='Validate a configuration file')
    check_parser.add_argument('--config', '-c', required=True, help='Configuration file')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if hasattr(args, 'debug') and args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = CoordinatorConfig.load(args.config)

        if args.command == 'daemon':
            sys.exit(_run_daemon(config))

        elif args.command == 'status':
            sys.exit(_print_status(config))

        elif args.command == 'check-config':
            print(json.dumps(config.to_dict(), indent=2))
            print("Configuration OK")
            sys.exit(0)

    except CoordinatorError as e:
        logger.error(str(e))
        sys.exit(2)


if __name__ == '__main__':
    main()
