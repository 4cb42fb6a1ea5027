# run_tasks_manually.py
import asyncio
import logging
import sys
import os

# Хак для корректной работы импортов
sys.path.append(os.getcwd())

from app.tasks_registry import TASKS


async def main(task_names: list[str]):
    """
    Поочередно запускает задачи из реестра. Без аргументов запускает все.
    """
    print("--- Manual Task Runner ---")
    names = task_names or list(TASKS)
    unknown = [name for name in names if name not in TASKS]
    if unknown:
        print(f"Unknown tasks: {', '.join(unknown)}. Available: {', '.join(TASKS)}")
        return

    for index, name in enumerate(names, start=1):
        task = TASKS[name]
        print(f"\n[{index}/{len(names)}] Running: {name}...")
        if task["is_async"]:
            await task["function"]()
        else:
            # Синхронные задачи выполняем в отдельном потоке, не блокируя event loop
            await asyncio.to_thread(task["function"])
        print("Done.")

    print("\n--- All tasks completed! ---")


if __name__ == "__main__":
    # Настраиваем логирование, чтобы видеть вывод от наших сервисов
    logging.basicConfig(level=logging.INFO, stream=sys.stdout, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    try:
        asyncio.run(main(sys.argv[1:]))
    except KeyboardInterrupt:
        print("\nScript interrupted by user.")
