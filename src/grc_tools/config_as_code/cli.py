import argparse
import json
import logging
import os
import sys
from typing import Dict

import yaml

from .config import load_engine_config
from .connectors.resource_store import ResourceStore, build_memory_stores, dump_state, load_state_file
from .core_logic.plan_renderer import describe_apply_result, describe_plan
from .errors import ConfigAsCodeError
from .models import FileFormat, ResourceType
from .parsers.config_parser import detect_format
from .service import ConfigAsCodeService


def _load_stores(state_path: str) -> Dict[ResourceType, ResourceStore]:
    if not os.path.exists(state_path):
        print(f"State file {state_path} not found, starting from empty live state.", file=sys.stderr)
        return build_memory_stores()
    return load_state_file(state_path)


def _write_state(state_path: str, stores: Dict[ResourceType, ResourceStore]) -> None:
    state = dump_state(stores)
    with open(state_path, "w") as f:
        if state_path.endswith((".yaml", ".yml")):
            yaml.safe_dump(state, f, sort_keys=False)
        else:
            json.dump(state, f, indent=2)
            f.write("\n")


def _read_config_file(file_path: str) -> str:
    with open(file_path, "r") as f:
        return f.read()


def main():
    parser = argparse.ArgumentParser(
        description="Config-as-code for compliance resources: plan, apply and export."
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to engine config (default: search for .config-as-code.yml upwards).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log engine activity to stderr.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    format_choices = [f.value for f in FileFormat]

    plan_parser = subparsers.add_parser("plan", help="Show what applying a config file would change.")
    plan_parser.add_argument("--file", required=True, help="Config file (.tf, .yaml or .json).")
    plan_parser.add_argument("--state", required=True, help="JSON or YAML file holding the live state.")
    plan_parser.add_argument("--format", choices=format_choices, default=None,
                             help="Override the format detected from the file extension.")

    apply_parser = subparsers.add_parser("apply", help="Apply a config file to the live state file.")
    apply_parser.add_argument("--file", required=True, help="Config file (.tf, .yaml or .json).")
    apply_parser.add_argument("--state", required=True, help="JSON or YAML file holding the live state.")
    apply_parser.add_argument("--format", choices=format_choices, default=None)
    apply_parser.add_argument("--dry-run", action="store_true", help="Count the changes without writing.")
    apply_parser.add_argument("-m", "--message", default=None, help="Commit message for the applied file.")

    export_parser = subparsers.add_parser("export", help="Render live state of one resource type as config.")
    export_parser.add_argument("--type", required=True, choices=[t.value for t in ResourceType])
    export_parser.add_argument("--state", required=True, help="JSON or YAML file holding the live state.")
    export_parser.add_argument("--format", choices=format_choices, default=FileFormat.DECLARATIVE.value)
    export_parser.add_argument("--output", default=None, help="Write to this file instead of stdout.")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        engine_config = load_engine_config(args.config)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    try:
        stores = _load_stores(args.state)
    except (ValueError, OSError, yaml.YAMLError) as e:
        print(f"Error: Could not load state file {args.state}: {e}", file=sys.stderr)
        sys.exit(2)

    service = ConfigAsCodeService(config=engine_config, store_factory=lambda workspace_id: stores)

    if args.command == "export":
        content = service.workspace().exporter.export(ResourceType(args.type), FileFormat(args.format))
        if args.output:
            with open(args.output, "w") as f:
                f.write(content)
            print(f"Exported {args.type} to {args.output}")
        else:
            sys.stdout.write(content)
        sys.exit(0)

    if not os.path.exists(args.file):
        print(f"Error: Config file {args.file} not found.", file=sys.stderr)
        sys.exit(2)
    content = _read_config_file(args.file)
    file_format = FileFormat(args.format) if args.format else detect_format(args.file, engine_config.default_format)
    path = os.path.basename(args.file)

    if args.command == "plan":
        plan, _ = service.build_plan(path, content, file_format)
        for line in describe_plan(plan):
            print(line)
        if plan.errors:
            sys.exit(2)
        sys.exit(0 if plan.is_empty else 1)

    # apply
    try:
        result = service.apply_changes(
            path, content, file_format, commit_message=args.message, user_id="cli", dry_run=args.dry_run
        )
    except ConfigAsCodeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    for line in describe_apply_result(result):
        print(line)
    if any(e.resource_type is None for e in result.errors):
        # The plan itself was rejected; nothing ran.
        sys.exit(2)
    if not args.dry_run:
        _write_state(args.state, stores)
    sys.exit(1 if result.errors else 0)


if __name__ == "__main__":
    main()
