"""Command-line trigger surface for the continuous-learning pipeline.

Every command prints a JSON object on stdout and exits 0. A pipeline
error prints {"error": ..., "message": ...} on stderr and exits 1.
Logs go to stderr.
"""

import argparse
import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from continuous_learning.checkpoint import CheckpointManager
from continuous_learning.config import LearningConfig, load_config, save_config
from continuous_learning.errors import InvalidObservation, LearningError
from continuous_learning.evolution import EvolutionEngine
from continuous_learning.instinct_store import InstinctStore
from continuous_learning.models import ArtifactKind, ObservationType
from continuous_learning.observer import ObservationStore
from continuous_learning.processor import InstinctProcessor

logger = logging.getLogger(__name__)

LOG_FORMAT: str = "%(levelname)s %(name)s: %(message)s"


def _confidence(value: str) -> float:
    try:
        parsed = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {value}") from None
    if not 0.0 <= parsed <= 1.0:
        raise argparse.ArgumentTypeError("must be within [0, 1]")
    return parsed


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value}") from None
    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return parsed


def _read_json(text: str, what: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidObservation(f"{what} is not valid JSON: {e.msg}") from e


def _read_hook_event() -> tuple[str, Any, dict[str, Any]]:
    """Read a hook event {type, data, context} from stdin.

    A missing type means tool_use; an event without a data key is itself
    the payload.
    """
    event = _read_json(sys.stdin.read(), "stdin event")
    if not isinstance(event, dict):
        raise InvalidObservation("stdin event must be a JSON object")
    data = event.get("data")
    if data is None:
        data = event
    context = event.get("context") or {}
    if not isinstance(context, dict):
        raise InvalidObservation("stdin event context must be a JSON object")
    return event.get("type") or "tool_use", data, context


def cmd_record(args: argparse.Namespace, config: LearningConfig) -> dict[str, Any]:
    if args.type in (None, "-"):
        obs_type, data, context = _read_hook_event()
    else:
        obs_type, context = args.type, {}
        if args.data in (None, "-"):
            data = _read_json(sys.stdin.read(), "data")
        else:
            data = _read_json(args.data, "data")
    flags = {"session_id": args.session, "cwd": args.cwd, "framework": args.framework}
    context = {**context, **{k: v for k, v in flags.items() if v}}
    observation = ObservationStore(config).record(obs_type, data, context, source="cli")
    return {"recorded": observation.id, "type": observation.type}


def cmd_process(args: argparse.Namespace, config: LearningConfig) -> dict[str, Any]:
    processor = InstinctProcessor(config)
    if args.dry_run:
        instincts = processor.analyze(min_confidence=args.min_confidence)
        return {
            "dry_run": True,
            "count": len(instincts),
            "instincts": [i.to_dict() for i in instincts],
        }
    return processor.process(min_confidence=args.min_confidence).to_dict()


def cmd_evolve(args: argparse.Namespace, config: LearningConfig) -> dict[str, Any]:
    engine = EvolutionEngine(config)
    if args.instinct:
        kind = ArtifactKind(args.kind) if args.kind else None
        artifact = engine.evolve_instinct(args.instinct, kind)
        return {"evolved": [artifact.id], "artifact": artifact.to_index_dict()}
    return engine.evolve(dry_run=args.dry_run, category_filter=args.category).to_dict()


def cmd_candidates(args: argparse.Namespace, config: LearningConfig) -> dict[str, Any]:
    candidates = EvolutionEngine(config).candidates()
    return {
        "candidates": [c.to_dict() for c in candidates],
        "eligible_count": sum(1 for c in candidates if c.eligible),
    }


def cmd_instincts(args: argparse.Namespace, config: LearningConfig) -> dict[str, Any]:
    instincts = InstinctStore(config).list()
    return {"count": len(instincts), "instincts": [i.to_dict() for i in instincts]}


def cmd_observations(args: argparse.Namespace, config: LearningConfig) -> dict[str, Any]:
    observations = ObservationStore(config).tail(args.limit)
    return {"count": len(observations), "observations": [o.to_record() for o in observations]}


def cmd_stats(args: argparse.Namespace, config: LearningConfig) -> dict[str, Any]:
    return ObservationStore(config).stats().to_dict()


def cmd_checkpoint(args: argparse.Namespace, config: LearningConfig) -> dict[str, Any]:
    manager = CheckpointManager(config)
    action = args.checkpoint_command
    if action == "create":
        return manager.create(name=args.name).to_dict()
    if action == "list":
        return {"checkpoints": [c.to_dict() for c in manager.list()]}
    if action == "restore":
        return manager.restore(args.id, backup=not args.no_backup).to_dict()
    if action == "diff":
        return manager.diff(args.id)
    if action == "export":
        path = manager.export(args.id, args.path)
        return {"checkpoint_id": args.id, "exported_to": str(path)}
    info = manager.import_archive(args.path)
    return info.to_dict()


def cmd_config(args: argparse.Namespace, config: LearningConfig) -> dict[str, Any]:
    if args.config_command == "set":
        config = config.with_value(args.key, args.value)
        save_config(config)
        logger.info("Set %s = %s", args.key, args.value)
    return config.to_identity()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="continuous-learning",
        description="Capture observations, learn instincts and evolve them into skills, commands and agents.",
    )
    parser.add_argument(
        "--root",
        type=Path,
        default=None,
        help="Storage root (default: $CONTINUOUS_LEARNING_DIR or ~/.claude/continuous-learning)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    record = subparsers.add_parser("record", help="Append one observation")
    record.add_argument(
        "type",
        nargs="?",
        help="Observation type ("
        + ", ".join(t.value for t in ObservationType)
        + "); omit or pass - to read a hook event from stdin",
    )
    record.add_argument("data", nargs="?", help="Observation data as a JSON object; - reads it from stdin")
    record.add_argument("--session", help="Session id")
    record.add_argument("--cwd", help="Working directory")
    record.add_argument("--framework", help="Detected framework")
    record.set_defaults(handler=cmd_record)

    process = subparsers.add_parser("process", help="Extract instincts from observations")
    process.add_argument("--min-confidence", type=_confidence, default=0.0)
    process.add_argument("--dry-run", action="store_true", help="Score groups without committing")
    process.set_defaults(handler=cmd_process)

    evolve = subparsers.add_parser("evolve", help="Evolve high-confidence instincts")
    evolve.add_argument("--dry-run", action="store_true", help="Preview without writing")
    evolve.add_argument("--category", help="Only instincts of this category or artifact kind")
    evolve.add_argument("--instinct", help="Evolve this instinct regardless of its gate")
    evolve.add_argument("--kind", choices=[k.value for k in ArtifactKind], help="Artifact kind for --instinct")
    evolve.set_defaults(handler=cmd_evolve)

    candidates = subparsers.add_parser("candidates", help="Show instincts against their evolution gates")
    candidates.set_defaults(handler=cmd_candidates)

    instincts = subparsers.add_parser("instincts", help="List personal and inherited instincts")
    instincts.set_defaults(handler=cmd_instincts)

    observations = subparsers.add_parser("observations", help="Show recent observations")
    observations.add_argument("--limit", type=_positive_int, default=100)
    observations.set_defaults(handler=cmd_observations)

    stats = subparsers.add_parser("stats", help="Observation store statistics")
    stats.set_defaults(handler=cmd_stats)

    checkpoint = subparsers.add_parser("checkpoint", help="Manage checkpoints")
    checkpoint.set_defaults(handler=cmd_checkpoint)
    checkpoint_sub = checkpoint.add_subparsers(dest="checkpoint_command", required=True)
    create = checkpoint_sub.add_parser("create", help="Snapshot the current state")
    create.add_argument("--name", help="Human-readable label")
    checkpoint_sub.add_parser("list", help="List checkpoints, oldest first")
    restore = checkpoint_sub.add_parser("restore", help="Restore a checkpoint")
    restore.add_argument("id")
    restore.add_argument("--no-backup", action="store_true", help="Skip the pre-restore checkpoint")
    diff = checkpoint_sub.add_parser("diff", help="Compare a checkpoint with the current state")
    diff.add_argument("id")
    export = checkpoint_sub.add_parser("export", help="Write a checkpoint as a .tar.gz")
    export.add_argument("id")
    export.add_argument("path", type=Path)
    import_ = checkpoint_sub.add_parser("import", help="Add a checkpoint from a .tar.gz")
    import_.add_argument("path", type=Path)

    config = subparsers.add_parser("config", help="Show or change identity.json settings")
    config.set_defaults(handler=cmd_config)
    config_sub = config.add_subparsers(dest="config_command", required=True)
    config_sub.add_parser("show", help="Print the configuration")
    config_set = config_sub.add_parser("set", help="Change one setting")
    config_set.add_argument("key")
    config_set.add_argument("value")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Run one command.

    Returns:
        0 on success, 1 on a pipeline error.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )

    handler: Callable[[argparse.Namespace, LearningConfig], dict[str, Any]] = args.handler
    try:
        config = load_config(args.root)
        result = handler(args, config)
    except LearningError as e:
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
