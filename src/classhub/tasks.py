"""Celery tasks for provisioning accounts in the background."""

import asyncio
import logging
from typing import Dict, List

from .provisioning import AccountRequest, ProvisioningPipeline
from .worker import celery_app


logger = logging.getLogger(__name__)


# Never retried automatically; reruns report committed accounts as conflicts.
@celery_app.task(name="classhub.tasks.import_accounts")
def import_accounts(caller_id: str, records: List[Dict[str, str]]) -> Dict[str, object]:
    """Provision a batch of accounts and return the bulk summary."""
    logger.info("importing %d accounts for caller=%s", len(records), caller_id)
    requests = [
        AccountRequest(
            username=r.get("username", ""),
            password=r.get("password", ""),
            display_name=r.get("display_name"),
        )
        for r in records
    ]
    result = asyncio.run(ProvisioningPipeline().provision_bulk(caller_id, requests))
    return result.to_dict()
