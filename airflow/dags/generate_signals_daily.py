from __future__ import annotations

import os
from datetime import datetime, timedelta
from textwrap import dedent

from airflow import DAG
from airflow.providers.docker.operators.docker import DockerOperator
from docker.types import Mount

DEFAULT_ARGS = {
    "owner": "data-platform",
    "depends_on_past": False,
    "email_on_failure": False,
    "email_on_retry": False,
    "retries": 1,
    "retry_delay": timedelta(minutes=10),
}

COMPOSE_PROJECT = os.environ.get("COMPOSE_PROJECT_NAME", "deal-signals")
DOCKER_NETWORK = f"{COMPOSE_PROJECT}_default"
JOBS_IMAGE = os.environ.get("JOBS_IMAGE", "deal-signals-jobs:latest")
DATA_MOUNT = Mount(target="/app/data", source="deal_signals_data", type="volume")

ENV_KEYS = [
    "DLD_API_KEY",
    "DLD_API_BASE_URL",
    "SIGNALS_MIN_SCORE",
    "SIGNALS_MIN_COMPARABLES",
    "SIGNALS_BATCH_SIZE",
    "SIGNALS_BATCH_DELAY",
    "SIGNALS_RATE_LIMIT",
    "SIGNALS_MAX_RETRIES",
    "SIGNALS_ORG_ID",
    "COMPARABLE_LOOKBACK_DAYS",
    "LOG_LEVEL",
]

ENVIRONMENT = {key: value for key in ENV_KEYS if (value := os.environ.get(key))}

QUALITY_CHECK_SCRIPT = dedent(
    """
from storage.db import connect

conn = connect(read_only=True)
counts = {
    "geo": conn.execute("SELECT COUNT(*) FROM geo_reference WHERE is_active").fetchone()[0],
    "transactions": conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0],
    "unmapped": conn.execute("SELECT COUNT(*) FROM transactions WHERE geo_id IS NULL").fetchone()[0],
    "signals": conn.execute("SELECT COUNT(*) FROM market_signals").fetchone()[0],
    "duplicate_keys": conn.execute(
        "SELECT COUNT(*) - COUNT(DISTINCT signal_key) FROM market_signals"
    ).fetchone()[0],
}
conn.close()

assert counts["geo"] > 0, "No geo references loaded"
assert counts["transactions"] > 0, "No transactions loaded"
assert counts["duplicate_keys"] == 0, "Duplicate signal keys"
print(counts)
    """
).strip()


def _job(task_id: str, command: list[str]) -> DockerOperator:
    return DockerOperator(
        task_id=task_id,
        image=JOBS_IMAGE,
        command=command,
        docker_url="unix://var/run/docker.sock",
        auto_remove=True,
        network_mode=DOCKER_NETWORK,
        environment=ENVIRONMENT,
        mounts=[DATA_MOUNT],
        mount_tmp_dir=False,
        do_xcom_push=False,
    )


with DAG(
    dag_id="generate_signals_daily",
    description="Ingest DLD transactions, score active listings and check the signal store",
    schedule="0 5 * * *",
    start_date=datetime(2024, 1, 1),
    catchup=False,
    default_args=DEFAULT_ARGS,
    max_active_runs=1,
    tags=["deal-signals", "etl"],
) as dag:

    ingest_dld = _job(
        "ingest_dld",
        ["python", "-m", "jobs", "ingest-dld", "--from", "{{ macros.ds_add(ds, -7) }}", "--to", "{{ ds }}"],
    )

    generate_signals = _job(
        "generate_signals",
        ["python", "-m", "jobs", "generate-signals", "--as-of", "{{ ds }}"],
    )

    data_quality_checks = _job("data_quality_checks", ["python", "-c", QUALITY_CHECK_SCRIPT])

    ingest_dld >> generate_signals >> data_quality_checks
