"""
Seed Runs Script for pipewatch integration testing.
Generates synthetic CI/CD pipeline runs and pushes them to VictoriaMetrics
using the metric names PrometheusExtractor queries by default.
"""
import argparse
import asyncio
import random
import time

import httpx

VM_URL = "http://localhost:8428"


def build_lines(pipeline_id: str, runs: int, interval_minutes: int, slowdown_at: int | None) -> list[str]:
    lines = []
    now = int(time.time())
    start_time = now - runs * interval_minutes * 60

    for i in range(runs):
        t_ms = (start_time + i * interval_minutes * 60) * 1000
        labels = f'{{pipeline_id="{pipeline_id}"}}'

        duration = 600 + random.uniform(-30, 30)
        if slowdown_at is not None and i == slowdown_at:
            duration *= 6  # SPIKE
        success = 1 if random.random() > 0.05 else 0
        cpu = random.uniform(35, 75)
        memory = random.uniform(40, 80)
        minutes = duration / 60

        samples = {
            "pipeline_run_duration_seconds": duration,
            "pipeline_run_success": success,
            "pipeline_run_cpu_percent": cpu,
            "pipeline_run_memory_percent": memory,
            "pipeline_run_storage_percent": random.uniform(15, 35),
            "pipeline_run_network_percent": random.uniform(5, 20),
            "pipeline_run_test_coverage_percent": random.uniform(78, 82),
            "pipeline_run_cost": minutes * 0.10 / 60 + cpu * 0.02 + memory * 0.01,
        }
        # Prometheus text format: metric_name{label="val"} value timestamp_ms
        lines.extend(f"{name}{labels} {value:.4f} {t_ms}" for name, value in samples.items())
    return lines


async def seed_runs(url: str, pipeline_ids: list[str], runs: int, interval_minutes: int, slowdown_at: int | None):
    lines = []
    for pipeline_id in pipeline_ids:
        lines.extend(build_lines(pipeline_id, runs, interval_minutes, slowdown_at))
    print(f"Seeding {runs} runs for {len(pipeline_ids)} pipeline(s) ({len(lines)} samples)...")

    async with httpx.AsyncClient() as client:
        response = await client.post(f"{url}/api/v1/import/prometheus", content="\n".join(lines))

    if response.status_code == 204:
        print("Successfully seeded data.")
    else:
        print(f"Failed to seed: {response.status_code} {response.text}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("pipelines", nargs="+", help="Pipeline ids to generate runs for")
    parser.add_argument("--url", default=VM_URL)
    parser.add_argument("--runs", type=int, default=60)
    parser.add_argument("--interval-minutes", type=int, default=60)
    parser.add_argument("--slowdown-at", type=int, default=None, help="Index of a run to make six times slower")
    args = parser.parse_args()
    asyncio.run(seed_runs(args.url, args.pipelines, args.runs, args.interval_minutes, args.slowdown_at))
