"""
AWS Lambda entry point.

Configure the bucket's ``s3:ObjectCreated:*`` notification for the
``uploads/`` prefix to invoke ``handler``. The storage client and the database
pool are built once per execution environment when this module is imported
and reused by every invocation.
"""
import asyncio
import json
import logging
from typing import Any, Dict, List

import structlog

from backend.image_processor.app.config import settings
from backend.image_processor.app.database import create_db_engine
from backend.image_processor.app.image_processor import ProcessingOutcome
from backend.image_processor.app.main import build_processor

logging.getLogger().setLevel(getattr(logging, settings.log_level.upper()))
logger = structlog.get_logger(__name__)

engine = create_db_engine(settings)
processor = build_processor(settings, engine)


def build_response(outcomes: List[ProcessingOutcome]) -> Dict[str, Any]:
    if len(outcomes) == 1:
        return outcomes[0].to_lambda_response()

    failed = any(not outcome.succeeded for outcome in outcomes)
    return {
        "statusCode": 500 if failed else 200,
        "body": json.dumps([outcome.response_body() for outcome in outcomes]),
    }


def handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    logger.info("Event received", records=len(event.get("Records", [])))
    outcomes = asyncio.run(processor.handle_event(event))
    return build_response(outcomes)
