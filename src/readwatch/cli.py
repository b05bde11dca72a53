# src/readwatch/cli.py
from __future__ import annotations
import argparse, logging, sys, time
from pathlib import Path

import pandas as pd

from readwatch.app import Application
from readwatch.config import load_run_config
from readwatch.exceptions import ConfigError, FilesystemError
from readwatch.hardware import recommend_workers
from readwatch.utility.utils import setup_logging

L = logging.getLogger(__name__)


def _key_values(items: list[str] | None) -> dict[str, str]:
    """["a=1", "b=x,y"] → {"a": "1", "b": "x,y"}"""
    out = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"expected key=value, got '{item}'")
        out[key.strip()] = value.strip()
    return out


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="readwatch",
        description="Watch a sequencing run, annotate each read batch as it lands and keep live mapping statistics")
    ap.add_argument("-v", "--verbose", action="count", default=0, help="-v: info, -vv: use for debugging")
    ap.add_argument("--config", metavar="YAML", help="run configuration (default: config/config.yaml)")
    sp = ap.add_subparsers(dest="cmd", required=True)

    # ── live run ---------------------------------------------------------
    p_run = sp.add_parser("run", help="Watch the basecalled directory until Ctrl-C")
    p_run.add_argument("--title", help="run title shown on the dashboard")
    p_run.add_argument("--basecalledPath", dest="basecalled_path", metavar="DIR",
                       help="folder the basecaller writes FASTQ batches into")
    p_run.add_argument("--annotatedPath", dest="annotated_path", metavar="DIR",
                       help="folder for per-batch annotation CSVs (default: annotations)")
    p_run.add_argument("--barcodesCsv", dest="barcodes_csv", metavar="CSV",
                       help="barcode,sample table; replaces the samples in the config")
    p_run.add_argument("--barcodeNames", nargs="+", metavar="BC=NAME", default=None,
                       help="extra barcode assignments, e.g. NB01=patient_7")
    p_run.add_argument("--annotationOptions", nargs="+", metavar="KEY=VALUE", default=None,
                       help="named options handed to the annotation command")
    p_run.add_argument("--workers", dest="max_workers", type=int,
                       help="annotation runs at once (default: recommend-workers)")
    p_run.add_argument("--timeout", type=float, help="seconds before an annotation run is stopped")
    p_run.add_argument("--clearAnnotated", dest="clear_annotated", action="store_true", default=None,
                       help="delete existing annotation output before starting")
    p_run.add_argument("--simulateRealTime", dest="simulate_real_time", type=float, metavar="SECONDS",
                       help="pause between files found at startup to replay a finished run")

    # ── offline replay ---------------------------------------------------
    p_rep = sp.add_parser("replay", help="Ingest annotated files and print a per-sample summary")
    p_rep.add_argument("files", nargs="+", metavar="FILE", help="annotation CSV/TSV files")
    p_rep.add_argument("--barcodeNames", nargs="+", metavar="BC=NAME", default=None)

    # ── hardware ---------------------------------------------------------
    sp.add_parser("recommend-workers", help="Print a safe number of concurrent annotation runs")
    return ap


def summary_table(app: Application) -> pd.DataFrame:
    snap = app.snapshot()
    rows = []
    if snap is not None:
        for agg in [*snap.per_sample.values(), snap.combined]:
            rows.append({
                "sample": agg.name,
                "processed": agg.processed_count,
                "mapped": agg.mapped_count,
                "mapped_%": round(100 * agg.mapped_count / agg.processed_count, 1)
                            if agg.processed_count else 0.0,
                "top_reference": max(
                    ((r, n) for r, n in agg.ref_matches.items() if r != "unmapped"),
                    key=lambda rn: rn[1], default=("-", 0))[0],
            })
    return pd.DataFrame(rows, columns=["sample", "processed", "mapped", "mapped_%", "top_reference"])


def _run(args, cfg) -> int:
    cfg.require_live()
    app = Application(cfg)
    try:
        app.start()
    except FilesystemError as e:
        L.error("%s", e)
        return 2
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        L.warning("Interrupted; stopping annotation runs")
    finally:
        app.shutdown()
    return 0


def _replay(args, cfg) -> int:
    app = Application(cfg)
    total = 0
    for f in args.files:
        p = Path(f)
        if not p.is_file():
            L.error("%s not found", p)
            return 1
        total += app.ingest_file(p)
    L.info("Replayed %d reads from %d file(s)", total, len(args.files))
    print(summary_table(app).to_string(index=False))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    LEVEL = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)

    if args.cmd == "recommend-workers":
        setup_logging(level=LEVEL)
        print(recommend_workers())
        return 0

    try:
        overrides = {"barcode_names": args.barcodeNames}
        if args.cmd == "run":
            overrides.update(
                title=args.title,
                basecalled_path=args.basecalled_path,
                annotated_path=args.annotated_path,
                barcodes_csv=args.barcodes_csv,
                annotation_options=_key_values(args.annotationOptions),
                max_workers=args.max_workers,
                timeout=args.timeout,
                clear_annotated=args.clear_annotated,
                simulate_real_time=args.simulate_real_time,
            )
        cfg = load_run_config(args.config, **overrides)
    except ConfigError as e:
        setup_logging(level=LEVEL)
        L.error("configuration error: %s", e)
        return 2

    setup_logging(log_dir=cfg.log_dir, level=LEVEL,
                  rotate_mb=cfg.log_rotate_mb, backup_count=cfg.log_backup_count)
    try:
        if args.cmd == "run":
            return _run(args, cfg)
        return _replay(args, cfg)
    except ConfigError as e:
        L.error("configuration error: %s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
