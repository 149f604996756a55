#!/usr/bin/env python3
"""Main CLI entry point for aw-context-worker."""

import os
import time
import logging
from typing import Optional

import click

from awctx.activity import detect_hostname, fetch_current_window, latest_screenshot, window_bucket
from awctx.config import RuntimeConfig, load_runtime_config
from awctx.errors import AwctxError, ConfigError
from awctx.models import build_backend
from awctx.orchestrator import Orchestrator
from awctx.text import sanitize_secrets
from awctx.utils.state import JsonFileStorage

LOG = logging.getLogger("aw-context-worker")


def _needs_llm(cfg: RuntimeConfig) -> bool:
    return cfg.knowledge.enabled or cfg.vlm.enabled or cfg.knowledge_acq.enabled


def build_orchestrator(cfg: RuntimeConfig, data_path: str) -> Orchestrator:
    """Wire storage, the generative backend and all components from config."""
    client = None
    if _needs_llm(cfg):
        try:
            client = build_backend(cfg.llm)
            LOG.info("Using %s backend for enrichment", cfg.llm.backend)
        except ConfigError as e:
            LOG.warning("Generative backend unavailable, LLM enrichment disabled: %s", e)
    storage = JsonFileStorage(os.path.expanduser(data_path))
    return Orchestrator.from_config(cfg, client=client, storage=storage)


def run_watch(
    orch: Orchestrator,
    aw_host: str,
    bucket_id: str,
    spool_dir: Optional[str],
    poll: float,
    context_every: float,
) -> None:
    """Poll the focused window, tick the tracker and periodically build context."""
    last_context = 0.0
    while True:
        subject = fetch_current_window(aw_host, bucket_id)
        if subject:
            orch.on_focus_tick(subject)
            now = time.time()
            if now - last_context >= context_every:
                image = latest_screenshot(spool_dir, max_age_s=max(context_every, poll * 2))
                ctx = orch.before_request(subject, image)
                last_context = now
                LOG.info(
                    "Context for %s: %d chars%s",
                    sanitize_secrets(subject),
                    len(ctx),
                    " (with screenshot)" if image else "",
                )
                LOG.debug("Context block:%s", ctx)
        time.sleep(poll)


@click.command()
@click.option(
    "--mode",
    type=click.Choice(["watch", "context"], case_sensitive=False),
    default="watch",
    show_default=True,
    help="watch: track focus continuously; context: print one context block and exit.",
)
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML/JSON file with enrichment settings.",
)
@click.option(
    "--data",
    "data_path",
    type=click.Path(dir_okay=False),
    help="Persistent store file (overrides data_path from config).",
)
@click.option(
    "--aw-host",
    default="http://127.0.0.1:5600",
    show_default=True,
    help="ActivityWatch server URL.",
)
@click.option(
    "--testing", is_flag=True, default=False, help="ActivityWatch client testing mode."
)
@click.option(
    "--spool-dir",
    type=click.Path(file_okay=False),
    help="Screenshot watcher spool directory (enables vision input).",
)
@click.option(
    "--poll",
    type=float,
    default=1.0,
    show_default=True,
    help="Focus polling cadence (s); each poll counts as one focus tick.",
)
@click.option(
    "--context-every",
    type=float,
    default=30.0,
    show_default=True,
    help="Seconds between context builds in watch mode.",
)
@click.option(
    "--subject",
    help="Subject to build context for in context mode (default: focused window).",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARN", "ERROR"], case_sensitive=False),
)
def main(
    mode,
    config_file,
    data_path,
    aw_host,
    testing,
    spool_dir,
    poll,
    context_every,
    subject,
    log_level,
):
    """ActivityWatch Context Worker - layered activity memory and context enrichment."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    try:
        cfg = load_runtime_config(config_file)
    except AwctxError as e:
        raise click.UsageError(str(e))

    mode = mode.lower()
    LOG.info(f"Starting aw-context-worker | mode={mode}")

    hostname = detect_hostname(testing=testing)
    bucket_id = window_bucket(hostname)

    orch = build_orchestrator(cfg, data_path or cfg.data_path)
    orch.init(start_tracker=(mode == "watch"))

    if mode == "context":
        subject = subject or fetch_current_window(aw_host, bucket_id)
        if not subject:
            raise click.UsageError("No focused window found; pass --subject")
        ctx = orch.before_request(subject, latest_screenshot(spool_dir))
        orch.wait_background(timeout=cfg.llm.timeout_s)
        click.echo(orch.build_context(subject) or ctx)
        orch.stop()
        return

    LOG.info(f"Watching {bucket_id} every {poll}s")
    try:
        run_watch(orch, aw_host, bucket_id, spool_dir, poll, context_every)
    except KeyboardInterrupt:
        LOG.info("Exiting.")
    finally:
        orch.stop()


if __name__ == "__main__":
    main()
