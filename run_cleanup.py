import argparse
import json
import logging
import sys

from credential_store import CredentialStoreError, get_credential_store
from gmail_auth import TokenRefreshAdapter
from logging_utils import configure_logging
from mailbox_cleanup import ERASE_CHUNK_SIZE, FailureKind, MailboxCleanupError, MailboxCleanupWorkflow
from settings import ConfigurationError, load_settings

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="One-shot move-to-trash of every message in a user's Gmail.")
    parser.add_argument("user_id", help="Stored user id (the value kept in the session cookie).")
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=ERASE_CHUNK_SIZE,
        help=f"Message ids per batchDelete call (default: {ERASE_CHUNK_SIZE}, max 1000).",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    if not 0 < args.chunk_size <= ERASE_CHUNK_SIZE:
        print(f"--chunk-size must be between 1 and {ERASE_CHUNK_SIZE}.", file=sys.stderr)
        return 2

    configure_logging()
    try:
        settings = load_settings()
    except ConfigurationError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    try:
        store = get_credential_store(settings)
    except CredentialStoreError:
        logger.exception("Could not open the credential store")
        failure = MailboxCleanupError(FailureKind.INTERNAL_FAILURE)
        print(json.dumps(failure.to_payload(), indent=2, sort_keys=True), file=sys.stderr)
        return 1

    adapter = TokenRefreshAdapter(store, settings.google_client_id, settings.google_client_secret)
    workflow = MailboxCleanupWorkflow(store=store, token_adapter=adapter, chunk_size=args.chunk_size)
    try:
        result = workflow.run(args.user_id)
    except MailboxCleanupError as exc:
        print(json.dumps(exc.to_payload(), indent=2, sort_keys=True), file=sys.stderr)
        return 1
    finally:
        store.close()

    print(json.dumps(result.to_payload(), indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
