import argparse
import asyncio
import json
from dotenv import load_dotenv

# Load environment variables before the settings module is imported
load_dotenv()

from flowengine.models.flow import FlowDefinition  # noqa: E402
from flowengine.models.session import OutputType  # noqa: E402
from flowengine.engine.validator import validate_flow  # noqa: E402
from flowengine.services.flow_service import create_flow_service  # noqa: E402
from flowengine.services.webhook_service import webhook_service  # noqa: E402
from flowengine.utils.alerting import alerting_service  # noqa: E402
from flowengine.utils.logging import setup_logging  # noqa: E402


async def simulate(path: str):
    """
    Chat with a flow document from the terminal. Nothing is persisted and
    delay/action nodes have no side effects; webhook and AI nodes do run.
    """
    with open(path, encoding="utf-8") as fh:
        flow = FlowDefinition.model_validate(json.load(fh))

    for issue in validate_flow(flow)["issues"]:
        print(f"[{issue['severity']}] {issue['error_code']}: {issue['message']}")

    service = create_flow_service()
    session = None
    try:
        while True:
            try:
                text = input("you> ")
            except EOFError:
                break
            result = await service.simulate(flow, text, session)
            for output in result.responses:
                if output.type == OutputType.TYPING:
                    print(f"  ... typing ({output.delay_seconds:g}s)")
                    continue
                print(f"{output.type.value}> {output.content}")
                for index, option in enumerate(output.options, start=1):
                    print(f"    {index}. {option.label}")
            session = result.session_state
            if result.completed:
                print(f"--- flow finished: {result.status.value}" + (f" ({result.error})" if result.error else ""))
                session = None
    finally:
        await webhook_service.cleanup()
        await alerting_service.cleanup()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Simulate a conversation against a flow JSON document.")
    parser.add_argument("flow_path", help="Path to a flow document (nodes, connections, trigger_config)")
    args = parser.parse_args()
    setup_logging()
    asyncio.run(simulate(args.flow_path))
