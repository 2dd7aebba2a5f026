# main.py
import argparse
import asyncio
import json
import sys

from rich import print

from jobrelay.adapters.aiohttp_client_adapter import AioHttpClientAdapter
from jobrelay.adapters.aiohttp_transports import AioHttpTransportFactory
from jobrelay.adapters.retry_tenacity import TenacityRetryAdapter
from jobrelay.core.config import ClientConfig
from jobrelay.core.exceptions import JobRelayError
from jobrelay.core.logging_config import configure_logging
from jobrelay.core.managers.client_session import ClientSession
from jobrelay.core.models.events import EventKind
from jobrelay.core.settings import app_settings, logger


# main lives at the outermost layer (not in core)
# Instantiates the concrete adapters
# Wires dependencies together
# Runs one job and prints its events


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="jobrelay", description="Submit a job to a remote service and print its events."
    )
    parser.add_argument("base_url", help="Service base URL")
    parser.add_argument("endpoint", help="Job name (e.g. /predict) or function index")
    parser.add_argument("data", help="JSON array of job inputs", default="[]", nargs="?")
    parser.add_argument("--show-settings", action="store_true")
    return parser.parse_args(argv)


def _endpoint(value: str):
    return int(value) if value.isdigit() else value


async def run(base_url: str, endpoint, data: list) -> int:
    token = app_settings.JOBRELAY_TOKEN.get_secret_value() if app_settings.JOBRELAY_TOKEN else None
    config = ClientConfig.from_app_settings(app_settings)
    retry_adapter = TenacityRetryAdapter(
        attempts=config.config_fetch_attempts,
        wait_initial=config.config_fetch_base_wait,
        wait_max=config.config_fetch_max_wait,
    )

    async with AioHttpClientAdapter(
        total_timeout=app_settings.JOBRELAY_HTTP_TIMEOUT,
        connect_timeout=app_settings.JOBRELAY_HTTP_CONNECT_TIMEOUT,
    ) as http_client:
        transports = AioHttpTransportFactory(
            http_client, connect_timeout=app_settings.JOBRELAY_HTTP_CONNECT_TIMEOUT
        )
        async with ClientSession(
            base_url,
            http_client=http_client,
            transports=transports,
            token=token,
            config=config,
            retry=retry_adapter,
        ) as client:
            job = client.submit(endpoint, data)
            job.on(EventKind.status, lambda e: print(e.model_dump(mode="json", exclude_none=True)))
            job.on(EventKind.data, lambda e: print(e.model_dump(mode="json")))
            job.on(EventKind.log, lambda e: print(e.model_dump(mode="json", exclude_none=True)))
            await job.done.wait()
            return 1 if job.state == "error" else 0


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(app_settings.JOBRELAY_LOG_LEVEL)
    if args.show_settings:
        app_settings.print_settings(logger)
    try:
        data = json.loads(args.data)
    except json.JSONDecodeError as exc:
        logger.error(f"Input data is not valid JSON: {exc}")
        return 2
    if not isinstance(data, list):
        data = [data]

    try:
        return asyncio.run(run(args.base_url, _endpoint(args.endpoint), data))
    except JobRelayError as exc:
        logger.error(str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
