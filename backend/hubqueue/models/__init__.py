from .task import TaskItem, TaskStatus
from .user import Role, UserRecord, migrate_user_record

__all__ = ["TaskItem", "TaskStatus", "Role", "UserRecord", "migrate_user_record"]
