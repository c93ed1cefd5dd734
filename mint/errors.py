from __future__ import annotations

import sys
from typing import Callable, Sequence

from botocore.exceptions import BotoCoreError, NoCredentialsError

from mint.aws import AwsError
from mint.vm import VMLookupError
from mint.waiters import WaitCancelledError, WaitFailedError, WaitTimeoutError


class UserFacingError(RuntimeError):
    """Error with user-facing text; caller should print and return non-zero."""


class PreconditionError(UserFacingError):
    """Raised before any mutating call when an operation cannot proceed."""


class StepError(UserFacingError):
    """A required call failed after earlier mutations already succeeded.

    Resources created before the failure are left in place; ``left_in_place``
    lists their ids so the operator can decide what to keep.
    """

    def __init__(self, step: str, cause: BaseException, left_in_place: Sequence[str] = ()) -> None:
        self.step = step
        self.left_in_place = tuple(left_in_place)
        message = f"Error: {step}: {cause}"
        if self.left_in_place:
            message += "\nResources left in place (not rolled back): " + ", ".join(self.left_in_place)
        super().__init__(message)


def main_guard(fn: Callable[[], None]) -> None:
    """Run fn and convert known errors to CLI output/exit code."""
    try:
        fn()
    except (UserFacingError, VMLookupError) as exc:
        print(str(exc), file=sys.stderr)
        raise SystemExit(1) from exc
    except AwsError as exc:
        print(f"Error: AWS request failed: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    except (WaitTimeoutError, WaitCancelledError, WaitFailedError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    except NoCredentialsError as exc:
        print(
            "Error: No AWS credentials found. Configure a profile or run 'aws sso login'.",
            file=sys.stderr,
        )
        raise SystemExit(1) from exc
    except BotoCoreError as exc:
        print(f"Error: AWS client failure: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    except OSError as exc:
        print(f"Error: OS failure: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
