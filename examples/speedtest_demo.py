#!/usr/bin/env python3
"""Runnable demo: publish synthetic speedtests, then run the job briefly.

Prerequisites:
    AWS credentials with access to the Kinesis stream and Timestream
    python examples/speedtest_demo.py examples/speedtest-job.yaml
"""

from __future__ import annotations

import asyncio
import json
import random
import sys
import time

from rich.console import Console

from speedtest_ingest.aws import create_client
from speedtest_ingest.config.loader import load_job_config
from speedtest_ingest.observability.health import Status, check_job_health
from speedtest_ingest.observability.logging import configure_logging
from speedtest_ingest.pipeline.runner import SpeedtestJob

console = Console()

ISPS = ["Comcast", "Verizon", "AT&T", "Spectrum"]


def synthetic_speedtest(device: int) -> dict[str, object]:
    return {
        "deviceId": f"device-{device:04d}",
        "timestamp": int(time.time() * 1000),
        "downloadBps": random.uniform(5e6, 9e8),
        "uploadBps": random.uniform(1e6, 2e8),
        "pingMs": random.uniform(4, 120),
        "jitterMs": random.uniform(0, 15),
        "isp": random.choice(ISPS),
        "serverId": random.randint(1000, 1100),
    }


def main(config_path: str | None) -> None:
    configure_logging("INFO")
    config = load_job_config(config_path)

    # 1. Health check
    health = check_job_health(config)
    if health.components[0].status != Status.HEALTHY:
        console.print("[red]Stream not reachable:[/red]", health.summary)
        sys.exit(1)

    # 2. Publish a few hundred records
    kinesis = create_client("kinesis", config.aws)
    entries = []
    for i in range(250):
        payload = synthetic_speedtest(i % 40)
        entries.append(
            {
                "Data": json.dumps(payload).encode(),
                "PartitionKey": str(payload["deviceId"]),
            }
        )
    for start in range(0, len(entries), 500):
        kinesis.put_records(
            StreamName=config.source.stream_name, Records=entries[start : start + 500]
        )
    console.print(f"[green]Published {len(entries)} records[/green]")

    # 3. Run the job for 30 seconds, then stop gracefully (drains the sinks)
    job = SpeedtestJob(config)

    async def run_for(seconds: float) -> None:
        task = asyncio.create_task(job.run_async())
        await asyncio.sleep(seconds)
        job.stop()
        await task

    asyncio.run(run_for(30))
    console.print(job.metrics_snapshot())


if __name__ == "__main__":
    main(sys.argv[1] if len(sys.argv) > 1 else None)
