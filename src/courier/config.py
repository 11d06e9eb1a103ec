""" Environment-driven settings. Every value can be overridden by setting
    the corresponding ``COURIER_*`` environment variable before import.
"""

from __future__ import annotations

import os

import pika


TRANSPORT = os.environ.get("COURIER_TRANSPORT", "rabbitmq")

BROKER_HOST = os.environ.get("COURIER_AMQP_HOST", "localhost")
BROKER_PORT = int(os.environ.get("COURIER_AMQP_PORT", "5672"))
BROKER_USER = os.environ.get("COURIER_AMQP_USER", "guest")
BROKER_PASSWORD = os.environ.get("COURIER_AMQP_PASSWORD", "guest")

CONFIRM_TIMEOUT = float(os.environ.get("COURIER_CONFIRM_TIMEOUT", "5"))
BATCH_SIZE = int(os.environ.get("COURIER_BATCH_SIZE", "100"))

RPC_QUEUE = os.environ.get("COURIER_RPC_QUEUE", "rpc_queue")
RPC_TIMEOUT = float(os.environ.get("COURIER_RPC_TIMEOUT", "30"))


def broker_params() -> pika.ConnectionParameters:
    return pika.ConnectionParameters(
        host=BROKER_HOST,
        port=BROKER_PORT,
        credentials=pika.PlainCredentials(BROKER_USER, BROKER_PASSWORD),
        heartbeat=600,
        blocked_connection_timeout=300,
    )
