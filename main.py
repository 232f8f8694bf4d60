"""
Console Test Harness for CollectionEngine

Simple console loop to run one collection domain against a local model
before going through Flask. Completed sessions are handed to a background
dispatcher that writes artifacts under outputs/artifacts/.

Usage:
    python main.py [domain]        (default: workout_creator)
"""

import logging
import sys
import uuid

from coachflow.factory import build_engines, settings_from_env
from coachflow.utils.hf_client import HuggingFaceClient

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

EXIT_COMMANDS = {"quit", "exit", "stop"}


def print_separator(char="=", length=60):
    """Print a separator line"""
    print(char * length)


def print_debug_info(turn_result):
    """Print debug information from TurnResult"""
    print("\n" + "-" * 60)
    print("DEBUG INFO:")
    print("-" * 60)

    debug = turn_result.debug
    extraction = debug.get('extraction') or {}

    if 'extraction_outcome' in debug:
        print(f"Extraction outcome: {debug['extraction_outcome']}")

    if extraction.get('ignored_fields'):
        print(f"Ignored fields: {extraction['ignored_fields']}")

    if extraction.get('validation_warnings'):
        print(f"Validation warnings: {extraction['validation_warnings']}")

    if extraction.get('finish_guard_applied'):
        print("Finish guard applied (short message)")

    if turn_result.decision is not None:
        print(f"Policy: {turn_result.decision.state.value} -> {list(turn_result.decision.next_slots)}")

    if turn_result.progress is not None:
        progress = turn_result.progress
        print(
            f"Progress: {progress.required_completed}/{progress.required_total} required, "
            f"{progress.completed}/{progress.total} overall"
        )

    if turn_result.trigger is not None:
        print(f"Trigger: {turn_result.trigger.reason} (triggered={turn_result.trigger.triggered})")

    print("-" * 60)


def main():
    """Run console test"""
    domain = sys.argv[1] if len(sys.argv) > 1 else "workout_creator"
    settings = settings_from_env()

    print_separator()
    print(f"COLLECTION ENGINE - CONSOLE TEST ({domain})")
    print_separator()
    print("\nInitializing modules (this may take 30 seconds)...")

    try:
        hf_client = HuggingFaceClient(model_name=settings['model'], load_in_4bit=True)
        engines, lifecycle, dispatcher = build_engines(
            hf_client, schema_dir=settings['schema_dir'], data_dir=settings['data_dir']
        )

        if domain not in engines:
            print(f"\nUnknown domain '{domain}'. Available: {', '.join(sorted(engines))}")
            return 1

        engine = engines[domain]
        print("\nModules initialized successfully!")

    except Exception as e:
        print(f"\nFailed to initialize: {e}")
        import traceback
        traceback.print_exc()
        return 1

    user_id = "console_user"
    conversation_id = f"console_{uuid.uuid4().hex[:8]}"

    print_separator()
    print("STARTING COLLECTION")
    print_separator()
    print("Type 'quit', 'exit', or 'stop' to end early\n")

    while True:
        try:
            user_input = input("> ").strip()

            if not user_input:
                print("Please enter a response.\n")
                continue

            if user_input.lower() in EXIT_COMMANDS:
                engine.cancel(user_id, conversation_id)
                print("\nCollection cancelled by user")
                break

            turn = engine.handle_turn(user_id, conversation_id, user_input)

            print("\nCoach: ", end="", flush=True)
            for fragment in turn:
                print(fragment, end="", flush=True)
            print("\n")

            turn_result = turn.result
            print(f"[Turn {turn_result.session.turn_count}, Session {turn_result.session.session_id}]")
            print_debug_info(turn_result)

            if turn_result.session_cancelled:
                print_separator()
                print("TOPIC CHANGED - COLLECTION CANCELLED")
                print_separator()
                print(f"Message to re-route: {turn_result.redispatch_message}")
                break

            if turn_result.collection_complete:
                print_separator()
                print("COLLECTION COMPLETE")
                print_separator()
                print("\nWaiting for generation to finish...")
                dispatcher.shutdown(wait=True)

                session = lifecycle.load_by_id(user_id, turn_result.session.session_id)
                lock = session.generation_lock
                print(f"\nGeneration status: {lock.status.value}")
                if lock.result_id:
                    print(f"  - Result: {lock.result_id}")
                if lock.error:
                    print(f"  - Error: {lock.error}")
                break

        except KeyboardInterrupt:
            print("\n\nCollection interrupted by user (Ctrl+C)")
            break

        except Exception as e:
            print(f"\nERROR: {e}")
            import traceback
            traceback.print_exc()

            try:
                cont = input("\nContinue collection? (y/n): ").strip().lower()
                if cont != 'y':
                    break
            except KeyboardInterrupt:
                break

    dispatcher.shutdown(wait=True)
    print_separator()
    print("Console test complete")
    print_separator()
    return 0


if __name__ == '__main__':
    sys.exit(main())
