from .converters import (
    db_to_pydantic_automation,
    db_to_pydantic_enrollment,
    db_to_pydantic_log_entry,
    db_to_pydantic_step,
    pydantic_to_db_automation,
    pydantic_to_db_enrollment,
    pydantic_to_db_log_entry,
    pydantic_to_db_step,
)
from .models import AutomationModel, Base, EnrollmentModel, LogEntryModel, StepModel
from .repository import AutomationRepository, InMemoryAutomationRepository
from .sql import SqlAutomationRepository, create_sql_engine

__all__ = [
    "AutomationRepository",
    "InMemoryAutomationRepository",
    "SqlAutomationRepository",
    "create_sql_engine",
    "AutomationModel",
    "StepModel",
    "EnrollmentModel",
    "LogEntryModel",
    "Base",
    "pydantic_to_db_automation",
    "db_to_pydantic_automation",
    "pydantic_to_db_step",
    "db_to_pydantic_step",
    "pydantic_to_db_enrollment",
    "db_to_pydantic_enrollment",
    "pydantic_to_db_log_entry",
    "db_to_pydantic_log_entry",
]
