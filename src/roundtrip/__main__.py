# src/roundtrip/__main__.py
from __future__ import annotations

import argparse

from roundtrip.cli.argparse_model import add_model_to_parser
from roundtrip.cli.commands import (
    CallerCommand,
    ProcessorCommand,
    ReceiverCommand,
    handle_caller,
    handle_processor,
    handle_receiver,
)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="roundtrip")
    sub = parser.add_subparsers(dest="command", required=True)

    caller_p = sub.add_parser("caller", help="Invoke the direct method on all destinations periodically.")
    add_model_to_parser(caller_p, CallerCommand)

    receiver_p = sub.add_parser("receiver", help="Run the edge module that answers direct methods.")
    add_model_to_parser(receiver_p, ReceiverCommand)

    processor_p = sub.add_parser("processor", help="Run the ingestion point that observes delivered messages.")
    add_model_to_parser(processor_p, ProcessorCommand)

    ns = parser.parse_args(argv)
    data = vars(ns)
    command = data.pop("command")

    if command == "caller":
        return handle_caller(CallerCommand.model_validate(data))
    if command == "receiver":
        return handle_receiver(ReceiverCommand.model_validate(data))
    if command == "processor":
        return handle_processor(ProcessorCommand.model_validate(data))

    raise RuntimeError(f"Unknown command: {command}")


if __name__ == "__main__":
    raise SystemExit(main())
