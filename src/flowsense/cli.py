"""CLI for the flowsense flow-state engine."""

import asyncio
import json
import logging

import click

from flowsense.config import EngineConfig
from flowsense.models import CAFFEINE, THEANINE, PersonalBaseline


def _build_config(config_path: str | None, overrides: dict) -> EngineConfig:
    overrides = {k: v for k, v in overrides.items() if v is not None}
    try:
        if config_path:
            base = EngineConfig.from_json(config_path).to_dict()
            base.update(overrides)
            return EngineConfig.from_dict(base)
        return EngineConfig.from_dict(overrides)
    except (ValueError, json.JSONDecodeError) as e:
        raise click.UsageError(f"Invalid configuration: {e}")


def baseline_options(f):
    """Shared options describing the user's personal baseline."""
    f = click.option("--data-points", default=30, type=int,
                     help="Calibration data points (days) collected.")(f)
    f = click.option("--baseline-rmssd", default=50.0, help="Baseline RMSSD in ms.")(f)
    f = click.option("--resting-hr", default=70.0, help="Resting heart rate in bpm.")(f)
    return f


def config_options(f):
    f = click.option("--dwell", default=None, type=float,
                     help="Minimum seconds in a state before a transition.")(f)
    f = click.option("--rmssd-window", default=None, type=int,
                     help="Number of recent RR intervals used for RMSSD.")(f)
    f = click.option("--config", "config_path", default=None,
                     type=click.Path(exists=True), help="JSON engine config file.")(f)
    return f


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """flowsense: real-time flow-state scoring from heart-rate data."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--hr", "heart_rate", required=True, type=float, help="Current heart rate (bpm).")
@click.option("--rmssd", required=True, type=float, help="Current RMSSD (ms).")
@click.option("--sleep", "sleep_quality", default=70.0, help="Sleep quality 0-100.")
@click.option("--caffeine", default=0.0, help="Active caffeine (mg).")
@click.option("--theanine", default=0.0, help="Active L-theanine (mg).")
@baseline_options
def score(
    heart_rate: float,
    rmssd: float,
    sleep_quality: float,
    caffeine: float,
    theanine: float,
    resting_hr: float,
    baseline_rmssd: float,
    data_points: int,
) -> None:
    """Compute one flow score from explicit inputs (no state machine)."""
    from flowsense.scoring.subscores import compute_subscores, confidence, total_score

    subs = compute_subscores(
        current_rmssd=rmssd,
        baseline_rmssd=baseline_rmssd,
        current_hr=heart_rate,
        resting_hr=resting_hr,
        sleep_quality=sleep_quality,
        substances={CAFFEINE: caffeine, THEANINE: theanine},
    )
    result = {
        "total": total_score(subs),
        "hrv_subscore": round(subs.hrv, 2),
        "hr_subscore": round(subs.hr, 2),
        "sleep_subscore": round(subs.sleep, 2),
        "substance_subscore": round(subs.substance, 2),
        "confidence": round(confidence(data_points), 3),
        "hrv_ratio": round(rmssd / max(1.0, baseline_rmssd), 3),
        "hr_ratio": round(heart_rate / max(1.0, resting_hr), 3),
    }
    click.echo(json.dumps(result, indent=2))


@main.command()
@click.argument("file", type=click.Path(exists=True))
@click.option("--output", "-o", default=None, help="Write the score timeline as JSON.")
@click.option("--show", is_flag=True, help="Print every score and haptic cue.")
@baseline_options
@config_options
def replay(
    file: str,
    output: str | None,
    show: bool,
    resting_hr: float,
    baseline_rmssd: float,
    data_points: int,
    config_path: str | None,
    rmssd_window: int | None,
    dwell: float | None,
) -> None:
    """Replay a JSONL event capture through the flow engine."""
    from flowsense.replay import replay_file

    config = _build_config(
        config_path,
        {"rmssd_window": rmssd_window, "min_state_duration_sec": dwell},
    )
    baseline = PersonalBaseline(
        resting_hr=resting_hr,
        baseline_rmssd=baseline_rmssd,
        data_point_count=data_points,
    )
    result = replay_file(file, output, baseline=baseline, config=config, verbose=show)

    if result.summary is not None:
        s = result.summary
        click.echo(f"\n{'=' * 50}")
        click.echo(f"  Duration:     {s.duration_seconds:.0f} s ({s.cycles} cycles)")
        click.echo(f"  Peak score:   {s.peak_flow_score}")
        click.echo(f"  Time in flow: {s.time_in_flow_seconds:.0f} s "
                   f"({s.flow_time_percent:.0f}%)")
        click.echo(f"  Avg HR:       {s.average_heart_rate:.0f} bpm")
        click.echo(f"  Avg RMSSD:    {s.average_rmssd:.1f} ms")
        click.echo(f"{'=' * 50}")


@main.command()
@click.option("--address", "-a", default=None, help="BLE address to connect to.")
@click.option("--duration", "-d", default=None, type=float, help="Session length in seconds.")
@click.option("--sleep", "sleep_quality", default=None, type=float, help="Sleep quality 0-100.")
@click.option("--caffeine", default=0.0, help="Active caffeine (mg).")
@click.option("--theanine", default=0.0, help="Active L-theanine (mg).")
@baseline_options
@config_options
def stream(
    address: str | None,
    duration: float | None,
    sleep_quality: float | None,
    caffeine: float,
    theanine: float,
    resting_hr: float,
    baseline_rmssd: float,
    data_points: int,
    config_path: str | None,
    rmssd_window: int | None,
    dwell: float | None,
) -> None:
    """Run a live flow session from a BLE heart-rate monitor."""
    from flowsense.heart_rate import stream_flow

    config = _build_config(
        config_path,
        {"rmssd_window": rmssd_window, "min_state_duration_sec": dwell},
    )
    baseline = PersonalBaseline(
        resting_hr=resting_hr,
        baseline_rmssd=baseline_rmssd,
        data_point_count=data_points,
    )
    try:
        asyncio.run(stream_flow(
            baseline,
            address=address,
            config=config,
            sleep_quality=sleep_quality,
            substances={CAFFEINE: caffeine, THEANINE: theanine},
            duration=duration,
        ))
    except KeyboardInterrupt:
        click.echo("\nStopped.")


@main.command()
@click.option("--timeout", "-t", default=10.0, help="Scan timeout in seconds.")
def scan(timeout: float) -> None:
    """Scan for nearby BLE heart-rate monitors."""
    from flowsense.heart_rate import scan as do_scan

    asyncio.run(do_scan(timeout))


if __name__ == "__main__":
    main()
