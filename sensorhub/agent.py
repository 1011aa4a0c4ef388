from __future__ import annotations

import argparse
import logging
import signal
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv

from .channels import ChannelRegistry
from .config import AgentConfig, build_store, load_config_from_env
from .dispatcher import Dispatcher
from .errors import ConfigurationError
from .observability import configure_logging
from .pipeline import Pipeline
from .sensors import build_registry, load_channel_specs_from_env
from .sink import HttpTelemetrySink
from .store import SqliteSampleStore

logger = logging.getLogger("sensorhub.agent")

PRUNE_INTERVAL_S = 3600.0
METRICS_LOG_INTERVAL_S = 300.0


@dataclass
class Runtime:
    config: AgentConfig
    dispatcher: Dispatcher
    store: SqliteSampleStore
    sink: HttpTelemetrySink
    pipeline: Pipeline


def build_runtime(config: AgentConfig, registry: ChannelRegistry) -> Runtime:
    dispatcher = Dispatcher()
    store = build_store(config.store)
    sink = HttpTelemetrySink(
        api_url=config.api_url,
        token=config.token,
        device_id=config.device_id,
        timeout_s=config.http_timeout_s,
        failures_before_stop=config.failures_before_stop,
        probe_interval_s=config.probe_interval_s,
    )
    pipeline = Pipeline(
        registry,
        sink=sink,
        store=store,
        dispatcher=dispatcher,
        intervals=config.intervals,
        tick_interval_s=config.tick_interval_s,
        retry_initial_s=config.retry_initial_s,
        retry_max_s=config.retry_max_s,
    )
    return Runtime(config=config, dispatcher=dispatcher, store=store, sink=sink, pipeline=pipeline)


def run_once(runtime: Runtime) -> None:
    """Probe, run a single tick, flush the sink and report."""

    runtime.sink.start()
    runtime.pipeline.start()
    if not runtime.pipeline.session_active:
        logger.warning("telemetry endpoint %s unreachable; nothing read", runtime.config.api_url)
    runtime.pipeline.tick()
    runtime.pipeline.stop()
    runtime.sink.close()
    runtime.dispatcher.run_pending()
    logger.info("run complete", extra={"fields": runtime.pipeline.metrics()})


def run_forever(runtime: Runtime) -> None:
    dispatcher = runtime.dispatcher
    store_config = runtime.config.store

    if store_config.max_age_s is not None:
        max_age_s = float(store_config.max_age_s)
        dispatcher.call_every(PRUNE_INTERVAL_S, lambda: runtime.store.prune(max_age_s=max_age_s))
    dispatcher.call_every(
        METRICS_LOG_INTERVAL_S,
        lambda: logger.info("metrics", extra={"fields": runtime.pipeline.metrics()}),
    )
    signal.signal(signal.SIGTERM, lambda *_: dispatcher.stop())

    runtime.sink.start()
    runtime.pipeline.start()
    try:
        dispatcher.run_forever()
    except KeyboardInterrupt:
        logger.info("interrupted")
    finally:
        runtime.pipeline.stop()
        runtime.sink.close()


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="sensorhub-agent", description="Sensor telemetry agent")
    parser.add_argument("--env-file", help="load environment from this file before reading config")
    parser.add_argument("--once", action="store_true", help="run a single tick and exit")
    args = parser.parse_args(argv)

    if args.env_file:
        load_dotenv(args.env_file, override=True)
    else:
        load_dotenv()

    try:
        config = load_config_from_env()
        configure_logging(level=config.log_level, log_format=config.log_format, device_id=config.device_id)
        specs = load_channel_specs_from_env()
        registry = build_registry(specs, device_id=config.device_id)
    except ConfigurationError as exc:
        raise SystemExit(f"sensorhub-agent: invalid configuration: {exc}") from exc

    runtime = build_runtime(config, registry)
    logger.info(
        "device_id=%s api=%s store=%s channels=%s",
        config.device_id,
        config.api_url,
        config.store.path,
        ",".join(f"{s.id}:{s.backend}:{s.delivery.value}" for s in specs),
    )

    if args.once:
        run_once(runtime)
    else:
        run_forever(runtime)


if __name__ == "__main__":
    main()
