# app/schemas/admin.py
from pydantic import BaseModel


class TaskInfo(BaseModel):
    task_name: str
    description: str


class TaskRunRequest(BaseModel):
    # Имя задачи из реестра или "all"
    task_name: str
