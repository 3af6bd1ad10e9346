"""Database models package."""
from models.database import Base, get_session, close_db, get_pool_status, get_engine
from models.user import User
from models.project import Project
from models.image import Image
from models.staging_job import StagingJob
from models.credit_transaction import CreditTransaction, CreditTransactionType
from models.status import ImageStatus, JobStatus

__all__ = [
    "Base",
    "get_session",
    "close_db",
    "get_pool_status",
    "get_engine",
    "User",
    "Project",
    "Image",
    "StagingJob",
    "CreditTransaction",
    "CreditTransactionType",
    "ImageStatus",
    "JobStatus",
]
