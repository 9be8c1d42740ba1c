from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Tuple

import click

from siploadtrace.config_loader import load_config
from siploadtrace.logging_setup import setup_logging
from siploadtrace.services.call_tracker import resolve_address
from siploadtrace.services.load_runner import LoadRunner, load_placer
from siploadtrace.services.pcap_replay import replay_pcap
from siploadtrace.services.recorder import CallIpRecorder, csv_path_for

LOGGER = logging.getLogger(__name__)


@click.group()
def main() -> None:
    """siploadtrace commands."""
    setup_logging()
    LOGGER.info("CLI bootstrap completed", extra={"category": "CONFIG"})


@main.command()
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=Path("siploadtrace.yaml"), show_default=True)
@click.option("--placer", "placer_spec", required=True, help="Call placer wrapping the SIP engine, as module:callable.")
@click.option("--calls", type=click.IntRange(min=1), default=None, help="Override sip.call_count.")
@click.option("--out-dir", type=click.Path(path_type=Path), default=None, help="Override logs.log_directory.")
def run(config_path: Path, placer_spec: str, calls: Optional[int], out_dir: Optional[Path]) -> None:
    """Place calls and record every IP seen per call."""
    try:
        config = load_config(config_path)
        placer = load_placer(placer_spec)
    except (ValueError, ImportError) as exc:
        raise click.UsageError(str(exc)) from exc

    setup_logging(log_file=(out_dir or config.logs.log_directory) / "app.log")
    LOGGER.info(
        "CLI run command config=%s placer=%s calls=%s out_dir=%s",
        config_path,
        placer_spec,
        config.sip.call_count if calls is None else calls,
        out_dir or config.logs.log_directory,
        extra={"category": "CONFIG"},
    )
    csv_path = csv_path_for(out_dir) if out_dir else None
    with CallIpRecorder.from_config(config, csv_path) as recorder:
        summary = LoadRunner(recorder, placer, config).run(calls)
        recorder.flush_remaining()
    click.echo(
        f"Calls attempted={summary.attempted} succeeded={summary.succeeded} "
        f"failed={summary.failed} csv={summary.csv_path}"
    )


@main.command()
@click.option("--pcap", "pcap_path", type=click.Path(exists=True, path_type=Path), prompt="SIP+RTP pcap")
@click.option("--local-ip", "local_ips", multiple=True, help="Address of the calling side; repeatable.")
@click.option("--out", "out_path", type=click.Path(path_type=Path), default=None, help="CSV output path.")
def replay(pcap_path: Path, local_ips: Tuple[str, ...], out_path: Optional[Path]) -> None:
    """Replay a capture through the recorder and write the per-call CSV."""
    csv_path = out_path or csv_path_for(Path("logs"))
    LOGGER.info(
        "CLI replay command pcap=%s local_ips=%s out=%s",
        pcap_path,
        list(local_ips) or "-",
        csv_path,
        extra={"category": "REPLAY"},
    )
    recorder = CallIpRecorder(csv_path)
    try:
        result = replay_pcap(pcap_path, recorder, local_ips)
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc
    click.echo(f"Calls={len(result.calls)} rows={result.rows} csv={csv_path}")


@main.command()
@click.argument("destination")
@click.option("--timeout", type=float, default=5.0, show_default=True)
def resolve(destination: str, timeout: float) -> None:
    """Resolve a SIP destination the way calls do before dialing."""
    click.echo(resolve_address(destination, timeout))


if __name__ == "__main__":
    main()
