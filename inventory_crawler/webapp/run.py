"""Run the API server."""

import argparse


def main():
    """Run the API with uvicorn."""
    parser = argparse.ArgumentParser(description="Run the inventory crawler API")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    args = parser.parse_args()

    serve(args.host, args.port, args.reload)


def serve(host: str = "127.0.0.1", port: int = 8000, reload: bool = False):
    import uvicorn

    uvicorn.run(
        "inventory_crawler.webapp.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    main()
