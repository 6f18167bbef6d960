from __future__ import annotations

import copy
import logging
import sys
import textwrap
import traceback
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableMapping, Optional, Sequence, Tuple

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.theme import Theme

from .assignment import assign, total_cost, unmatched
from .config import load_config
from .costs import build_cost_map, cost_summary, iter_gid_lids, resolve_cost_function
from .geom import extent_for_drawing, population_of
from .io_primitives import (
    apply_associations,
    build_subs,
    read_associations,
    read_cloud,
    read_primitives,
    save_primitives,
    write_correspondences,
)
from .metrics import RunMetrics, collect, stage
from .types import CostKey, Correspondences, PointTag, PrimitiveMap


log = logging.getLogger("primcorresp.cli")


HARDCODED_DEFAULTS: Dict[str, Any] = {
    "correspondence": {
        "cost": "position",
        "method": "greedy",
        "output": "corresp.csv",
        "subs": None,
        "backup": True,
    },
    "extent": {
        "threshold": 0.01,
        "max_iters": 10,
        "stretch": 1.0,
    },
    "io": {
        "primitive_kind": "line",
    },
}

KNOWN_COMMANDS = ("match", "extents")


class Logger:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        theme = Theme({
            "info": "cyan",
            "step": "bold cyan",
            "warning": "bold yellow",
            "error": "bold red",
        })
        self.console = Console(theme=theme, highlight=False, record=False, soft_wrap=True)
        self.err_console = Console(theme=theme, highlight=False, record=False, soft_wrap=True, stderr=True)

    def _print(self, message: str, style: str | None = None, *, err: bool = False) -> None:
        target = self.err_console if err else self.console
        if style:
            target.print(f"[{style}]{message}[/{style}]")
        else:
            target.print(message)

    def info(self, message: str) -> None:
        self._print(message, style="info")

    def step(self, message: str) -> None:
        self.console.print(f"[step]▶ {message}")

    def warn(self, message: str) -> None:
        self._print(message, style="warning")

    def error(self, message: str) -> None:
        self._print(message, style="error", err=True)

    def debug(self, message: str) -> None:
        if self.verbose:
            self.console.print(f"[dim]{message}[/dim]")


class _LoggingBridge(logging.Handler):
    def __init__(self, cli_logger: Logger, level: int) -> None:
        super().__init__(level)
        self._cli_logger = cli_logger

    def emit(self, record: logging.LogRecord) -> None:  # type: ignore[override]
        msg = escape(self.format(record))
        if record.levelno >= logging.ERROR:
            self._cli_logger.error(msg)
        elif record.levelno >= logging.WARNING:
            self._cli_logger.warn(msg)
        elif record.levelno >= logging.INFO:
            self._cli_logger.info(msg)
        else:
            self._cli_logger.debug(msg)


def _configure_logging(logger: Logger, verbose: bool) -> None:
    log_level = logging.DEBUG if verbose else logging.INFO
    package_logger = logging.getLogger("primcorresp")
    package_logger.setLevel(log_level)
    package_logger.propagate = False
    for handler in list(package_logger.handlers):
        if isinstance(handler, _LoggingBridge):
            package_logger.removeHandler(handler)
    bridge = _LoggingBridge(logger, log_level)
    bridge.setFormatter(logging.Formatter("%(message)s"))
    package_logger.addHandler(bridge)


def _deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key in base:
        value = base[key]
        if isinstance(value, Mapping):
            result[key] = copy.deepcopy(value)
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(result.get(key), Mapping):
            result[key] = _deep_merge(result[key], value)  # type: ignore[arg-type]
        else:
            result[key] = value
    return result


def _set_nested(config: MutableMapping[str, Any], path: Sequence[str], value: Any) -> None:
    if not path:
        return
    cursor: MutableMapping[str, Any] = config
    for key in path[:-1]:
        next_value = cursor.get(key)
        if not isinstance(next_value, MutableMapping):
            next_value = {}
            cursor[key] = next_value
        cursor = next_value
    cursor[path[-1]] = value


def _parse_cli_override(entry: str) -> Tuple[Tuple[str, ...], Any]:
    if "=" not in entry:
        raise ValueError("--opts erwartet 'pfad=wert'")
    raw_path, raw_value = entry.split("=", 1)
    path = tuple(part.strip() for part in raw_path.split(".") if part.strip())
    if not path:
        raise ValueError("--opts benötigt einen Schlüsselpfad, z. B. extent.threshold")
    try:
        value = yaml.safe_load(raw_value)
    except yaml.YAMLError as exc:
        raise ValueError(f"--opts {raw_path}: Wert konnte nicht geparst werden ({exc})") from exc
    return path, value


def _load_config_with_defaults(path: Optional[Path], opts: Sequence[str] = ()) -> Dict[str, Any]:
    raw_cfg: Dict[str, Any] = {}
    if path is not None:
        raw_cfg = load_config(str(path))
    config = _deep_merge(HARDCODED_DEFAULTS, raw_cfg)
    for entry in opts:
        key_path, value = _parse_cli_override(entry)
        _set_nested(config, key_path, value)
    return config


def _ensure_exists(path: Path, description: str) -> None:
    if not path.exists():
        raise FileNotFoundError(f"{description} nicht gefunden: {path}")
    if path.is_dir():
        raise FileNotFoundError(f"{description} darf kein Ordner sein: {path}")


def _read_tagged_cloud(cloud: Path, associations: Sequence[Tuple[Path, PointTag]]):
    points = read_cloud(cloud)
    for assoc_path, tag in associations:
        apply_associations(points, read_associations(assoc_path), tag)
    return points


def _summarize(
    logger: Logger,
    prims_a: PrimitiveMap,
    prims_b: PrimitiveMap,
    corresps: Correspondences,
    costs: Mapping[CostKey, float],
    outputs: Mapping[str, Path],
) -> None:
    keys_a = [key for key, _ in iter_gid_lids(prims_a)]
    keys_b = [key for key, _ in iter_gid_lids(prims_b)]
    free_a = unmatched(keys_a, corresps.keys())
    free_b = unmatched(keys_b, corresps.values())

    table = Table(title="Korrespondenzen", show_lines=False)
    table.add_column("A (gid.lid)")
    table.add_column("B (gid.lid)")
    table.add_column("Kosten", justify="right")
    for a in sorted(corresps):
        b = corresps[a]
        table.add_row(str(a), str(b), f"{costs[(a, b)]:.6f}")
    logger.console.print(table)

    stats = cost_summary(costs)
    logger.info(
        f"Paare: {len(corresps)} | Gesamtkosten: {total_cost(corresps, costs):.6f} | "
        f"Kandidaten: {int(stats['count'])}"
    )
    if free_a:
        logger.warn(f"Ohne Partner in A: {', '.join(str(k) for k in free_a)}")
    if free_b:
        logger.warn(f"Ohne Partner in B: {', '.join(str(k) for k in free_b)}")
    logger.info("Outputs:")
    for label, path in outputs.items():
        logger.info(f"  - {label}: {path}")


def _log_run_summary(run: RunMetrics) -> None:
    log.info("[timing] %s", run.timing_summary())
    log.info("[counts] %s", run.counter_summary())


def _handle_known_exception(logger: Logger, exc: Exception, *, prefix: str | None = None) -> None:
    message = str(exc) or exc.__class__.__name__
    if prefix:
        message = f"{prefix}: {message}"
    logger.error(message)


app = typer.Typer(
    help="Korrespondenzen zwischen zwei Primitivmengen bestimmen",
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
)


@app.command("match")
def match(
    prims_a: Path = typer.Argument(..., help="Primitive der Menge A (CSV)"),
    assoc_a: Path = typer.Argument(..., help="Punkt→Primitiv-Zuordnung für A"),
    prims_b: Path = typer.Argument(..., help="Primitive der Menge B (CSV)"),
    assoc_b: Path = typer.Argument(..., help="Punkt→Primitiv-Zuordnung für B"),
    cloud: Path = typer.Argument(..., help="Punktwolke (PLY oder XYZ)"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML-Konfiguration"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Ziel der Korrespondenz-CSV"),
    subs: Optional[Path] = typer.Option(None, "--subs", help="B-Primitive gruppiert nach A-Patch speichern"),
    cost: Optional[str] = typer.Option(None, "--cost", help="position | segment | angle | overlap"),
    method: Optional[str] = typer.Option(None, "--method", help="greedy | hungarian"),
    no_backup: bool = typer.Option(False, "--no-backup", help="Vorhandene Ausgabe nicht sichern"),
    opts: List[str] = typer.Option(
        [], "--opts", help="Konfigurationswerte überschreiben, z. B. --opts extent.threshold=0.05"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Ausführliche Ausgaben"),
) -> None:
    """Primitive aus A und B paarweise zuordnen und als CSV speichern."""
    logger = Logger(verbose=verbose)
    _configure_logging(logger, verbose)

    try:
        with collect() as run:
            for path, description in (
                (prims_a, "Primitive A"),
                (assoc_a, "Zuordnung A"),
                (prims_b, "Primitive B"),
                (assoc_b, "Zuordnung B"),
                (cloud, "Punktwolke"),
            ):
                _ensure_exists(path, description)

            cfg = _load_config_with_defaults(config, opts)
            corr_cfg = cfg["correspondence"]
            if output is not None:
                corr_cfg["output"] = str(output)
            if subs is not None:
                corr_cfg["subs"] = str(subs)
            if cost is not None:
                corr_cfg["cost"] = cost
            if method is not None:
                corr_cfg["method"] = method
            if no_backup:
                corr_cfg["backup"] = False
            logger.debug("Aktive Konfiguration:\n" + textwrap.indent(yaml.safe_dump(cfg, sort_keys=True), "  "))

            cost_fn = resolve_cost_function(str(corr_cfg["cost"]))
            kind = str(cfg["io"]["primitive_kind"])

            logger.step("Eingaben laden")
            with stage("io.read", log):
                points = _read_tagged_cloud(cloud, ((assoc_a, PointTag.GID_A), (assoc_b, PointTag.GID_B)))
                map_a = read_primitives(prims_a, kind)
                map_b = read_primitives(prims_b, kind)
            logger.debug(
                f"Punkte: {len(points)} | Patches A: {len(map_a)} | Patches B: {len(map_b)}"
            )

            logger.step("Kosten berechnen")
            with stage("corresp.costs", log):
                costs = build_cost_map(
                    map_a,
                    map_b,
                    points,
                    cost_fn,
                    extent_threshold=float(cfg["extent"]["threshold"]),
                )

            logger.step("Primitive zuordnen")
            with stage("corresp.assign", log):
                corresps = assign(costs, str(corr_cfg["method"]))

            logger.step("Ergebnis schreiben")
            outputs: Dict[str, Path] = {}
            with stage("io.write", log):
                outputs["CSV"] = write_correspondences(
                    Path(corr_cfg["output"]),
                    corresps,
                    prims_a,
                    prims_b,
                    backup=bool(corr_cfg["backup"]),
                )
                if corr_cfg.get("subs"):
                    outputs["Subs"] = save_primitives(Path(corr_cfg["subs"]), build_subs(corresps, map_b))

            _summarize(logger, map_a, map_b, corresps, costs, outputs)
        _log_run_summary(run)
    except (FileNotFoundError, ValueError, RuntimeError) as exc:
        _handle_known_exception(logger, exc, prefix="Fehler")
        raise typer.Exit(code=2) from exc
    except Exception as exc:  # pragma: no cover - fallback path
        _handle_known_exception(logger, exc, prefix="Unerwarteter Fehler")
        if verbose:
            traceback.print_exc()
        raise typer.Exit(code=1) from exc


@app.command("extents")
def extents(
    prims: Path = typer.Argument(..., help="Primitive (CSV)"),
    assoc: Path = typer.Argument(..., help="Punkt→Primitiv-Zuordnung"),
    cloud: Path = typer.Argument(..., help="Punktwolke (PLY oder XYZ)"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML-Konfiguration"),
    threshold: Optional[float] = typer.Option(None, "--threshold", min=0.0, help="Inlier-Schwelle"),
    max_iters: Optional[int] = typer.Option(None, "--max-iters", min=1, help="Maximale Verdopplungen der Schwelle"),
    stretch: Optional[float] = typer.Option(None, "--stretch", help="Streckfaktor der Segmente"),
    opts: List[str] = typer.Option([], "--opts", help="Konfigurationswerte überschreiben"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Ausführliche Ausgaben"),
) -> None:
    """Endpunkte der Liniensegmente aus ihren Inliern bestimmen."""
    logger = Logger(verbose=verbose)
    _configure_logging(logger, verbose)

    try:
        for path, description in ((prims, "Primitive"), (assoc, "Zuordnung"), (cloud, "Punktwolke")):
            _ensure_exists(path, description)

        cfg = _load_config_with_defaults(config, opts)
        extent_cfg = cfg["extent"]
        if threshold is not None:
            extent_cfg["threshold"] = threshold
        if max_iters is not None:
            extent_cfg["max_iters"] = max_iters
        if stretch is not None:
            extent_cfg["stretch"] = stretch

        points = _read_tagged_cloud(cloud, ((assoc, PointTag.GID_A),))
        prim_map = read_primitives(prims, str(cfg["io"]["primitive_kind"]))

        table = Table(title="Ausdehnung")
        for column in ("gid.lid", "p0", "p1", "Länge"):
            table.add_column(column)
        with collect() as run:
            for gid_lid, prim in iter_gid_lids(prim_map):
                indices = population_of(points, gid_lid.gid, PointTag.GID_A)
                if not indices:
                    log.warning("patch %d has no associated points", gid_lid.gid)
                p0, p1 = extent_for_drawing(
                    prim,
                    points,
                    float(extent_cfg["threshold"]),
                    indices,
                    max_iters=int(extent_cfg["max_iters"]),
                    stretch=float(extent_cfg["stretch"]),
                )
                table.add_row(
                    str(gid_lid),
                    " ".join(f"{v:.6f}" for v in p0),
                    " ".join(f"{v:.6f}" for v in p1),
                    f"{float(((p1 - p0) ** 2).sum()) ** 0.5:.6f}",
                )
        logger.console.print(table)
        log.info("[counts] %s", run.counter_summary())
    except (FileNotFoundError, ValueError, RuntimeError) as exc:
        _handle_known_exception(logger, exc, prefix="Fehler")
        raise typer.Exit(code=2) from exc


def main(argv: Optional[List[str]] = None) -> None:
    args = list(sys.argv[1:] if argv is None else argv)
    if args and args[0] not in KNOWN_COMMANDS and args[0] not in ("-h", "--help"):
        args.insert(0, "match")
    app(args=args, prog_name="primcorresp")


if __name__ == "__main__":
    main()
