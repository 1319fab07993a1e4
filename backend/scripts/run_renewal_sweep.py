from sqlmodel import Session

from tenantbill.core.logging_setup import logger, setup_logging
from tenantbill.db.session import engine
from tenantbill.services.billing_scheduler import run_renewal_sweep

# Run from cron: python -m scripts.run_renewal_sweep (cwd backend/)

if __name__ == "__main__":
    setup_logging()
    with Session(engine) as session:
        report = run_renewal_sweep(session)
    logger.info(
        "Renewal sweep done renewed=%s canceled=%s past_due=%s failed=%s",
        len(report.renewed),
        len(report.canceled),
        len(report.past_due),
        len(report.failed),
    )
    raise SystemExit(1 if report.failed else 0)
