"""Run the recurring billing batch once, outside the web app.

For hosts that schedule with cron instead of calling the HTTP endpoint:
    python -m app.billing.scripts.run_recurring_billing

Prints the run summary as JSON and exits with status 1 if the run failed.
"""

import asyncio
import json
import sys

from app.api.deps import get_billing_runner
from app.billing.correlation import configure_logging, new_correlation_id
from app.config import settings
from app.database import engine
from app.schemas.billing import BillingRunResponse


async def main() -> int:
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return 1

    runner = get_billing_runner(settings)
    try:
        run = await runner.run(correlation_id=new_correlation_id("cron"))
    finally:
        await engine.dispose()

    summary = BillingRunResponse.from_run(run, mode="scheduled")
    print(json.dumps(summary.model_dump(mode="json", by_alias=True), indent=2))
    return 0 if run.success else 1


if __name__ == "__main__":
    configure_logging()
    sys.exit(asyncio.run(main()))
