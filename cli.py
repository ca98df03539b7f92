#!/usr/bin/env python3
"""
Command-line interface for the URL shortener event integration layer.

Usage:
    python cli.py [command] [options]

Commands:
    consume            Run a consuming service (notifications or analytics)
    declare-topology   Declare exchanges, queues and bindings on RabbitMQ
    serve              Run the notification consumer with the Preference API
    demo               Run the in-process demo
    test               Run the test suite

Configuration comes from EVENTS_* environment variables or a .env file.

Examples:
    python cli.py declare-topology
    python cli.py consume notifications
    python cli.py consume analytics --no-sweep
    python cli.py serve --port 3003
"""

import argparse
import logging
import signal
import subprocess
import sys

from shared.config import Settings

logger = logging.getLogger("cli")


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
        datefmt="%H:%M:%S",
    )
    # pika logs every frame at INFO
    logging.getLogger("pika").setLevel(logging.WARNING)


def connect(settings: Settings):
    from event_driven.rabbitmq import RabbitMQBroker

    broker = RabbitMQBroker(settings.rabbitmq_uri, prefetch_count=settings.prefetch_count)
    broker.connect()
    return broker


def build_notification_consumer(settings: Settings, broker):
    """The notification service, its consumer and its retention sweeper."""
    from event_driven.consumer import Consumer
    from event_driven.notification_service import NotificationService
    from event_driven.retention import RetentionSweeper
    from event_driven.topology import declare_exchanges, declare_queue, notification_queue

    declare_exchanges(broker, settings)
    declare_queue(broker, notification_queue(settings))

    service = NotificationService(settings)
    consumer = Consumer(broker, settings.notification_queue, settings, name="notifications")
    service.register(consumer)
    sweeper = RetentionSweeper.for_stores(settings, notifications=service.records)
    return service, consumer, sweeper


def build_analytics_consumer(settings: Settings, broker):
    """The analytics service, its consumer and its retention sweeper."""
    from event_driven.analytics_service import AnalyticsService
    from event_driven.consumer import Consumer
    from event_driven.publisher import Publisher
    from event_driven.retention import RetentionSweeper
    from event_driven.topology import analytics_queue, declare_exchanges, declare_queue

    declare_exchanges(broker, settings)
    declare_queue(broker, analytics_queue(settings))

    service = AnalyticsService(settings, Publisher(broker, settings, source="analytics-service"))
    consumer = Consumer(broker, settings.analytics_queue, settings, name="analytics")
    service.register(consumer)
    sweeper = RetentionSweeper.for_stores(settings, analytics=service.store)
    return service, consumer, sweeper


def run_consumer(settings: Settings, service_name: str, sweep: bool) -> None:
    """Consume until SIGINT / SIGTERM, then shut down gracefully."""
    broker = connect(settings)
    if service_name == "notifications":
        _, consumer, sweeper = build_notification_consumer(settings, broker)
    else:
        _, consumer, sweeper = build_analytics_consumer(settings, broker)

    def _stop(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        consumer.request_stop()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    if sweep:
        sweeper.start()
    try:
        consumer.run()
    finally:
        sweeper.stop(wait=False)
        broker.close()


def run_declare_topology(settings: Settings) -> None:
    from event_driven.topology import declare_all

    broker = connect(settings)
    try:
        declare_all(broker, settings)
    finally:
        broker.close()
    print("Topology declared")


def run_server(settings: Settings, host: str, port: int) -> None:
    """Run the Preference API with the notification consumer in the background."""
    import uvicorn

    from api.main import app, reset_api_state

    broker = connect(settings)
    service, consumer, sweeper = build_notification_consumer(settings, broker)
    reset_api_state(service)

    consumer.start()
    sweeper.start()
    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    try:
        uvicorn.run(app, host=host, port=port)
    finally:
        consumer.stop(settings.shutdown_timeout_seconds)
        sweeper.stop(wait=False)
        broker.close()


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = [sys.executable, "-m", "pytest"] + args
    subprocess.run(cmd)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="URL shortener event integration CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s declare-topology
  %(prog)s consume notifications
  %(prog)s consume analytics --no-sweep
  %(prog)s serve --port 3003
  %(prog)s demo
  %(prog)s test -v
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Consume command
    consume_parser = subparsers.add_parser("consume", help="Run a consuming service")
    consume_parser.add_argument(
        "service",
        choices=["notifications", "analytics"],
        help="Which service's queue to consume",
    )
    consume_parser.add_argument(
        "--no-sweep",
        action="store_true",
        help="Don't run the retention sweeper in this process",
    )

    # Topology command
    subparsers.add_parser("declare-topology", help="Declare exchanges, queues and bindings")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the notification consumer and the Preference API")
    serve_parser.add_argument("--host", default=None, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind to")

    # Demo command
    demo_parser = subparsers.add_parser("demo", help="Run the in-process demo")
    demo_parser.add_argument("--clicks", type=int, default=120, help="Redirects to simulate")

    # Test command
    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        return

    settings = Settings()
    configure_logging(settings)

    if args.command == "consume":
        run_consumer(settings, args.service, sweep=not args.no_sweep)
    elif args.command == "declare-topology":
        run_declare_topology(settings)
    elif args.command == "serve":
        run_server(settings, args.host or settings.api_host, args.port or settings.api_port)
    elif args.command == "demo":
        from event_driven.demo import run_demo
        run_demo(clicks=args.clicks)
    elif args.command == "test":
        run_tests(args.pytest_args)


if __name__ == "__main__":
    main()
