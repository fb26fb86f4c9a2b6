import asyncio

from endpoint_server import EndpointServer
from runpod_client.endpoint_client import RunpodClient
from runpod_client.models import ClientConfig, EndpointInput, ExecutionPolicy


async def status_changed(job):
    print(f"Status changed to: {job.status.value}")
    print(f"Elapsed time: {job.elapsed_time:.6f}s")


async def main():
    PORT = 8000
    server = EndpointServer(endpoint_id="demo", api_key="demo-key", completion_time=5.0)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = ClientConfig(api_key="demo-key", base_url=f"http://localhost:{PORT}")
    endpoint = RunpodClient(config).endpoint("demo", on_status_change=status_changed)

    try:
        result = await endpoint.run_until_complete(
            EndpointInput(
                input={"prompt": "a photo of a horse"},
                policy=ExecutionPolicy(execution_timeout=60000),
            )
        )
        print(f"Final status: {result.status}")
        print(f"Output: {getattr(result, 'output', None)}")

        job = await endpoint.run(
            {"input": {"mock_return": ["a", "b", "c", "d"], "mock_delay": 1.0}}
        )
        async for chunk in endpoint.stream(job.id):
            print(f"Stream yielded: {chunk.output}")

        print(f"Health: {(await endpoint.health()).model_dump(exclude={'raw_response'})}")
    except Exception as e:
        print(f"Error occurred: {e}")
    finally:
        await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
