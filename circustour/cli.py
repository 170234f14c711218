import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path

from circustour import __version__
import circustour.config as cfg_module
import circustour.snapshot as snapshot_module
from circustour.generator.build import build_site
from circustour.serve import DEFAULT_PORT, serve
from circustour.ticketsource import TicketSourceClient, TicketSourceError
from circustour.towns import group_by_town


def _fetch(args, cfg):
    ts_cfg = cfg_module.get_ticketsource(cfg)
    reference = args.reference or ts_cfg.get("reference")
    snapshot_path = cfg_module.get_snapshot_path(cfg)

    print("Fetching events from TicketSource ...", end=" ", flush=True)
    try:
        client = TicketSourceClient.from_config(cfg)
        records = client.fetch_event_records(reference=reference)
    except TicketSourceError as exc:
        print(f"FAILED ({exc})")
        sys.exit(1)

    grouped = group_by_town(records)
    snapshot_module.save(snapshot_path, grouped, fetched_at=datetime.now(timezone.utc))
    print(f"{len(records)} events in {len(grouped)} towns saved to '{snapshot_path}'.")


def _generate(args, cfg):
    site_cfg = cfg_module.get_site(cfg)
    snapshot_path = cfg_module.get_snapshot_path(cfg)
    output_dir = Path(site_cfg.get("output_dir", "output"))

    try:
        grouped, fetched_at = snapshot_module.load(snapshot_path)
    except FileNotFoundError:
        print(f"Error: no event snapshot at '{snapshot_path}'. Run 'ct fetch' first.", file=sys.stderr)
        sys.exit(1)

    towns = build_site(grouped, cfg, output_dir, fetched_at=fetched_at)
    print(f"Site generated in '{output_dir}/' ({len(towns)} town pages).")


def _serve(args, cfg):
    output_dir = Path(cfg_module.get_site(cfg).get("output_dir", "output"))
    serve(output_dir, port=args.port, open_browser=not args.no_browser)


def main():
    parser = argparse.ArgumentParser(
        prog="ct",
        description="Circus tour static site generator",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config", default="config.toml", metavar="PATH",
        help="Path to config.toml (default: config.toml)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # fetch
    sp_fetch = subparsers.add_parser("fetch", help="Pull events from TicketSource into the snapshot")
    sp_fetch.add_argument(
        "--reference", metavar="REF",
        help="Only include events with this TicketSource reference (case-insensitive)",
    )

    # generate
    subparsers.add_parser("generate", help="Generate the static website from the snapshot")

    # run (fetch + generate)
    sp_run = subparsers.add_parser("run", help="Fetch events then generate the site")
    sp_run.add_argument(
        "--reference", metavar="REF",
        help="Only include events with this TicketSource reference (case-insensitive)",
    )

    # serve
    sp_serve = subparsers.add_parser("serve", help="Preview the generated site locally")
    sp_serve.add_argument("--port", type=int, default=DEFAULT_PORT)
    sp_serve.add_argument("--no-browser", action="store_true", help="Don't open a browser tab")

    args = parser.parse_args()
    config_path = Path(args.config)
    cfg = cfg_module.load(config_path, env_path=config_path.parent / "secrets")

    if args.command == "fetch":
        _fetch(args, cfg)
    elif args.command == "generate":
        _generate(args, cfg)
    elif args.command == "run":
        _fetch(args, cfg)
        _generate(args, cfg)
    elif args.command == "serve":
        _serve(args, cfg)


if __name__ == "__main__":
    main()
