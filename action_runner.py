#!/usr/bin/env python3
"""
action-pipeline runner
Reads selected search results as JSON lines on stdin and pushes each one
through the action pipeline, printing one JSON summary per action
"""
import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from action_pipeline.action_handler import ActionHandler, ActionProcessingOptions
from action_pipeline.config import ConfigurationManager, PipelineConfig
from action_pipeline.errors import ActionPipelineError
from action_pipeline.models import SearchResult
from action_pipeline.navigation import RecordingNavigator, WebBrowserNavigator

# Configure logging; the default stream is stderr so stdout stays JSON
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def setup_components(config_path: Path, open_browser: bool = False) -> Tuple[PipelineConfig, ActionHandler]:
    """Load the configuration and build the action handler.

    Returns:
        Tuple of (pipeline_config, action_handler)
    """
    pipeline_config = ConfigurationManager(config_path).load()
    navigator = WebBrowserNavigator() if open_browser else RecordingNavigator()
    action_handler = ActionHandler.from_config(pipeline_config, navigator=navigator)
    return pipeline_config, action_handler


async def process_request(line: str, action_handler: ActionHandler) -> Optional[Dict[str, Any]]:
    """Process a single request line.

    Args:
        line: JSON object with ``result`` and optional ``query`` and ``action_type``
        action_handler: Handler that runs the action

    Returns:
        Summary to print, or None for input that is not JSON
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        logger.warning(f"Ignoring non-JSON input: {line[:50]}...")
        return None

    if not isinstance(data, dict) or not isinstance(result_data := data.get("result"), dict):
        return {"error": "Request must be an object with a 'result' object"}

    try:
        result = SearchResult.from_dict(result_data)
    except KeyError as e:
        return {"error": f"Result is missing required field: {e}"}

    options = ActionProcessingOptions(
        query=data.get("query", ""),
        action_type=data.get("action_type", "select")
    )

    try:
        processed = await action_handler.process_action(result, options)
    except ActionPipelineError as e:
        logger.error(f"Action for result {result.id} failed: {e}")
        return {"result_id": result.id, "success": False, "error": str(e)}

    return processed.to_dict()


async def process_line(line_bytes: bytes, action_handler: ActionHandler) -> Optional[Dict[str, Any]]:
    """Decode one raw stdin line and process it; undecodable or blank lines are skipped"""
    try:
        line = line_bytes.decode().strip()
    except UnicodeDecodeError as e:
        logger.warning(f"Ignoring line that is not valid UTF-8: {e}")
        return None

    if not line:
        return None
    return await process_request(line, action_handler)


async def main() -> None:
    """Main entry point for stdio mode"""
    parser = argparse.ArgumentParser(description="action-pipeline runner")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("pipeline.json"),
        help="Configuration file path (default: pipeline.json)"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )
    parser.add_argument(
        "--open-browser",
        action="store_true",
        help="Open navigated URLs in the system browser instead of recording them"
    )

    args = parser.parse_args()

    logging.getLogger().setLevel(getattr(logging, args.log_level))
    logger.info("action-pipeline runner starting in stdio mode")

    _, action_handler = setup_components(args.config, args.open_browser)

    shutdown_event = asyncio.Event()

    def signal_handler(signum: int, _) -> None:
        logger.info(f"Received signal {signum}, initiating shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        loop = asyncio.get_running_loop()

        stdin_reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(stdin_reader)
        await loop.connect_read_pipe(lambda: protocol, sys.stdin)

        async def read_stdin() -> None:
            while not shutdown_event.is_set():
                try:
                    # Timeout keeps the loop responsive to shutdown
                    line_bytes = await asyncio.wait_for(stdin_reader.readline(), timeout=1.0)

                    if not line_bytes:
                        logger.info("Stdin closed, initiating shutdown")
                        shutdown_event.set()
                        break

                    if (response := await process_line(line_bytes, action_handler)) is not None:
                        print(json.dumps(response))
                        sys.stdout.flush()

                except asyncio.TimeoutError:
                    continue
                except Exception as e:
                    if shutdown_event.is_set():
                        break
                    logger.error(f"Error reading stdin: {e}")
                    break

        stdin_task = asyncio.create_task(read_stdin())
        shutdown_task = asyncio.create_task(shutdown_event.wait())
        _, pending = await asyncio.wait(
            [stdin_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED
        )

        for task in pending:
            task.cancel()
            try:
                await asyncio.wait_for(task, timeout=2.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    finally:
        try:
            cleanup = await asyncio.wait_for(action_handler.shutdown(), timeout=30.0)
            logger.info(f"Released {cleanup.resources_cleaned} resources ({cleanup.failed} failed)")
        except asyncio.TimeoutError:
            logger.error("Handler shutdown timed out after 30 seconds")

        logger.info("Runner shutdown complete")


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
