import asyncio

import httpx
import uvicorn

from tracker.api import app
from tracker.config import Settings
from tracker.ordering import midpoint

HEADERS = {"X-Team-Id": "team-demo", "X-User-Id": "user-demo"}


async def send_mock_requests(base_url: str):
    async with httpx.AsyncClient(timeout=30.0, headers=HEADERS) as client:
        response = await client.post(f"{base_url}/projects", json={"name": "Website"})
        print(f"Create project: {response.status_code} - {response.json()}")
        project_id = response.json()["id"]

        response = await client.post(
            f"{base_url}/tasks",
            json={"title": "Task 1", "description": "First mock task", "project_id": project_id},
        )
        print(f"Create Task 1: {response.status_code} - {response.json()}")
        task1_id = response.json()["id"]

        response = await client.post(
            f"{base_url}/tasks",
            json={"title": "Task 2", "priority": 1, "project_id": project_id},
        )
        print(f"Create Task 2: {response.status_code} - {response.json()}")
        task2_id = response.json()["id"]

        top = await client.get(f"{base_url}/tasks/{task1_id}")
        position = midpoint(None, top.json()["position"])
        response = await client.patch(
            f"{base_url}/tasks/{task2_id}/position", json={"position": position}
        )
        print(f"Move Task 2 to top: {response.status_code} - {response.json()}")

        response = await client.patch(
            f"{base_url}/tasks/{task1_id}", json={"status": "in_progress", "assignee_id": "alice"}
        )
        print(f"Start Task 1: {response.status_code} - {response.json()}")

        response = await client.patch(f"{base_url}/tasks/{task1_id}", json={"status": "done"})
        print(f"Finish Task 1: {response.status_code} - {response.json()}")

        response = await client.delete(f"{base_url}/tasks/{task2_id}")
        print(f"Delete Task 2: {response.status_code}")

        response = await client.post(f"{base_url}/tasks/{task2_id}/restore")
        print(f"Restore Task 2: {response.status_code} - {response.json()}")

        response = await client.get(f"{base_url}/tasks/kanban")
        print(f"Board snapshot: {response.status_code} - {response.json()}")

        response = await client.get(f"{base_url}/tasks/stats")
        print(f"Stats: {response.status_code} - {response.json()}")


async def main():
    settings = Settings.from_env()
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )
    )

    async def run_server():
        await server.serve()

    server_task = asyncio.create_task(run_server())

    await asyncio.sleep(2)

    await send_mock_requests(f"http://{settings.host}:{settings.port}")

    server.should_exit = True
    await server_task


if __name__ == "__main__":
    asyncio.run(main())
