import argparse
import logging
import sys

from brain.config import load_settings
from brain.history import SQLiteRepository
from brain.llm import LLMService, RepositoryCredentials
from brain.schemas import GraphDefinition, Halted
from brain.session import ChatSession

settings = load_settings()

parser = argparse.ArgumentParser(description="Talk to a brain graph from the terminal")
source = parser.add_mutually_exclusive_group(required=True)
source.add_argument("--graph-file", help="GraphDefinition JSON file")
source.add_argument("--graph-id", help="graph stored in the SQLite database")
parser.add_argument("--db", default=settings.db_path)
parser.add_argument("--message", help="send one message and exit")
parser.add_argument("--session-id", default="cli")
parser.add_argument("--user-id", default=None)
parser.add_argument("--stream", action="store_true")
parser.add_argument("--verbose", action="store_true")
args = parser.parse_args()

logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)


def print_result(result):
    if isinstance(result, Halted):
        print(f"[halted: {result.reason.value}] {result.detail or ''}".rstrip())
    elif result.stream is not None:
        with result.stream as stream:
            for chunk in stream:
                print(chunk, end="", flush=True)
        print()
    else:
        print(result.result.text)
    print(f"[states] {session.store.values()}", file=sys.stderr)


try:
    repository = SQLiteRepository(args.db)
    if args.graph_file:
        with open(args.graph_file) as f:
            definition = GraphDefinition.model_validate_json(f.read())
    else:
        definition = repository.load_definition(args.graph_id)
    llm = LLMService(RepositoryCredentials(repository), user_id=args.user_id, timeout=settings.llm_timeout)
    session = ChatSession(
        args.session_id, definition, llm,
        repository=repository if args.graph_id else None,
        accumulate_all_types=settings.accumulate_all_types,
        on_analysis_error=settings.analysis_failure,
    )
    if args.message:
        print_result(session.send(args.message, stream=args.stream))
    else:
        print("Type a message, '/reset' to start a new conversation, '/quit' to exit.")
        while True:
            line = input("> ").strip()
            if line == "/quit":
                break
            if line == "/reset":
                session.reset()
                continue
            if line:
                print_result(session.send(line, stream=args.stream))
except (KeyboardInterrupt, EOFError):
    print()
except Exception as e:
    print(f"Error: {e}")
    sys.exit(1)
