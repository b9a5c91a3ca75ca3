import firebase_admin
from firebase_admin import credentials, firestore
from billing.core.config import settings
import logging

logger = logging.getLogger(__name__)


def init_firebase():
    """Initialize Firebase Admin SDK (only when analytics is enabled)"""
    logger.info("init_firebase: Entry")

    if not settings.analytics_enabled:
        logger.info("init_firebase: Skipped - analytics disabled")
        return

    try:
        if not firebase_admin._apps:
            cred = credentials.Certificate(settings.firebase_credentials_path)
            firebase_admin.initialize_app(cred, {
                'projectId': settings.firebase_project_id,
            })
            logger.info("init_firebase: Success")
        else:
            logger.info("init_firebase: Already initialized")
    except Exception as e:
        logger.error(f"init_firebase: Failure - {e}")
        raise


def get_firestore_client():
    """Get Firestore client instance"""
    return firestore.client()
