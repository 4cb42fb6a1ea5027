# app/tasks_registry.py

from app.services import deal_launcher, expiry_sweep, notification_cleanup

# --- Обертки над задачами: каждая открывает собственные сессии БД ---

async def run_expiry_sweep():
    await expiry_sweep.run_expiry_sweep()

async def run_launch_scheduled_deals():
    await deal_launcher.launch_scheduled_deals_task()

def run_cleanup_old_notifications():
    # Эта задача синхронная, поэтому у нее нет await
    notification_cleanup.cleanup_old_notifications_task()


# --- Словарь-реестр всех задач, доступных для ручного запуска ---
# Ключ - уникальное имя задачи, которое будет использоваться в API.
# 'function' - сама функция для вызова.
# 'description' - описание для админки.
# 'is_async' - флаг, чтобы скрипты знали, как запускать задачу.

TASKS = {
    "expiry_sweep": {
        "function": run_expiry_sweep,
        "description": "Завершает живые акции с истекшим таймером: активирует или помечает истекшими.",
        "is_async": True,
    },
    "launch_scheduled_deals": {
        "function": run_launch_scheduled_deals,
        "description": "Запускает запланированные акции, время старта которых наступило.",
        "is_async": True,
    },
    "cleanup_old_notifications": {
        "function": run_cleanup_old_notifications,
        "description": "Удаляет старые записи журнала уведомлений.",
        "is_async": False,
    },
}

# Отдельная функция для получения списка задач для API
def get_tasks_list():
    return [
        {"task_name": name, "description": data["description"]}
        for name, data in TASKS.items()
    ]
