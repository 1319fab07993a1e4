from sqlmodel import Session

from tenantbill.core.logging_setup import logger, setup_logging
from tenantbill.db.session import engine, init_db
from tenantbill.services.plans import PlanService

if __name__ == "__main__":
    setup_logging()
    init_db()
    with Session(engine) as session:
        plans = PlanService(session).ensure_default_plans()
        for plan in plans:
            logger.info("Plan id=%s name=%s kind=%s price=%s", plan.id, plan.name, plan.kind, plan.price)
