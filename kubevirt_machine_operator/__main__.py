"""Run the operator standalone: ``python -m kubevirt_machine_operator``."""
from __future__ import annotations

import logging
import os
import socket
import sys

import kopf

from . import controller  # noqa: F401  registers the kopf handlers
from .config import KOPF_PEERING, LOG_LEVEL


def configure_logging() -> None:
    """Configure logging with hostname and pod name for better traceability"""
    log_format = "%(asctime)s [%(levelname)s] [%(name)s] [%(hostname)s] [%(pod_name)s] %(message)s"

    hostname = socket.gethostname()
    pod_name = os.environ.get("POD_NAME", "unknown")

    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format=log_format,
        stream=sys.stdout,
    )

    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.hostname = hostname
        record.pod_name = pod_name
        return record

    logging.setLogRecordFactory(record_factory)
    logging.info(f"Logging configured at {LOG_LEVEL} level")


def main() -> None:
    configure_logging()

    leader_id = os.environ.get("POD_NAME", socket.gethostname())
    logging.info(f"KubeVirt machine operator starting, leader ID {leader_id}")

    # Peering keeps a single active replica when several run side by side.
    kopf.run(
        clusterwide=True,
        peering_name=KOPF_PEERING,
        identity=leader_id,
        priority=0,
    )


if __name__ == "__main__":
    main()
