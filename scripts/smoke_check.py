import sys
import tempfile
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from groupsub.config import settings
from groupsub.db import DB
from groupsub.handlers import router
from groupsub.routing import Route, parse_callback
from groupsub.setup_flow import SetupMachine
from groupsub.subscriptions import SubscriptionManager


def _run_checks() -> None:
    db = DB(settings.db_path)
    if not db.health_check():
        raise RuntimeError("Database health check failed")

    if router is None:
        raise RuntimeError("Handlers router failed to initialize")

    if parse_callback("pay:confirm:1").route is not Route.PAYMENT_CONFIRMATION:
        raise RuntimeError("Callback routing table is broken")

    # Exercise one full setup and grant against a scratch database
    with tempfile.TemporaryDirectory() as tmp:
        scratch = DB(str(Path(tmp) / "smoke.sqlite3"))
        scratch.create_group(-1, 1, "Smoke")
        machine = SetupMachine(scratch)
        machine.begin(-1, 1)
        for answer in ("Bank", "Name", "000", "$1"):
            machine.answer(-1, answer)
        if not scratch.get_group(-1).is_configured:
            raise RuntimeError("Setup flow did not complete")
        if SubscriptionManager(scratch, settings.subscription_duration).grant_membership(-1, 2) is None:
            raise RuntimeError("Membership grant failed")


def main() -> int:
    try:
        _run_checks()
    except Exception as exc:  # noqa: BLE001 - keep broad to surface any failure
        print(f"Smoke check failed: {exc}")
        return 1

    print("Smoke check OK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
