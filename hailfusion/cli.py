"""
Command line entry point.

    hailfusion [--config FILE] [--log-level LEVEL] run
    hailfusion poll {realtime,archive,ground_truth}
    hailfusion calibrate
    hailfusion query --bbox S,W,N,E [--start ISO --end ISO]
    hailfusion accuracy [--territory ID]
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from .config import TIER_LABELS, SystemConfig, load_config
from .models import BoundingBox, ReportTier, parse_timestamp
from .service import HailIntelligenceService, run_service

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(config: SystemConfig, level: Optional[str] = None):
    level = level or ("DEBUG" if config.debug else config.log_level)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='hailfusion', description='Hail intelligence fusion core')
    parser.add_argument('--config', help='Path to JSON configuration file')
    parser.add_argument('--log-level', help='Override log level (DEBUG, INFO, ...)')

    commands = parser.add_subparsers(dest='command', required=True)
    commands.add_parser('run', help='Run the scheduler until interrupted')

    poll = commands.add_parser('poll', help='Poll one tier now')
    poll.add_argument('tier', choices=TIER_LABELS)

    commands.add_parser('calibrate', help='Fetch ground truth and calibrate now')

    query = commands.add_parser('query', help='Storm events and contours in an area')
    query.add_argument('--bbox', required=True, help='south,west,north,east')
    query.add_argument('--start', help='ISO start time')
    query.add_argument('--end', help='ISO end time')

    accuracy = commands.add_parser('accuracy', help='Latest calibration record')
    accuracy.add_argument('--territory', help='Territory id (default: service area)')
    return parser


async def _poll(service: HailIntelligenceService, tier: ReportTier) -> dict:
    try:
        result = await service.trigger_manual_poll(tier)
    finally:
        await service.close()
    return result.to_dict()


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def main(argv=None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    configure_logging(config, args.log_level)

    if args.command == 'run':
        run_service(config)
        return 0

    service = HailIntelligenceService.build(config)

    if args.command in ('poll', 'calibrate'):
        tier = ReportTier.GROUND_TRUTH if args.command == 'calibrate' else ReportTier.from_label(args.tier)
        result = asyncio.run(_poll(service, tier))
        _print(result)
        if args.command == 'calibrate':
            _print(service.accuracy_dashboard())
        return 0 if result['success'] else 1

    if args.command == 'query':
        try:
            bbox = BoundingBox.from_string(args.bbox)
            start = parse_timestamp(args.start) if args.start else None
            end = parse_timestamp(args.end) if args.end else None
        except ValueError as e:
            parser.error(str(e))
        _print(service.query(bbox, (start, end)))
        return 0

    if args.command == 'accuracy':
        record = service.get_accuracy_report(args.territory)
        if record is None:
            logger.info("No calibration record yet")
            _print(None)
            return 1
        _print(record.to_dict())
        return 0

    parser.error(f"Unknown command {args.command}")
    return 2


if __name__ == '__main__':
    sys.exit(main())
