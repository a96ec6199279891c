"""
Task Board Agent API Launcher

Starts the HTTP/WebSocket service for the stage pipeline, the task board and voice sessions.

Usage:
    python start_api.py
    python start_api.py --port 8550
    python start_api.py --host 0.0.0.0 --port 9000 --reload
"""

import argparse
import sys


def main():
    parser = argparse.ArgumentParser(description="Task Board Agent API")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8550, help="Port to bind (default: 8550)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument("--log-level", default="info", help="uvicorn log level (default: info)")
    args = parser.parse_args()

    try:
        import uvicorn
    except ImportError:
        print("Error: uvicorn is required. Install it with:")
        print("  pip install uvicorn[standard]")
        sys.exit(1)

    from taskboard_agent.config import EnvConfig
    EnvConfig.load_env_file()

    print(f"""
╔══════════════════════════════════════════════════════════╗
║                    Task Board Agent                      ║
║                                                          ║
║   API:          http://{args.host}:{args.port}/api            ║
║   Voice relay:  ws://{args.host}:{args.port}/ws/voice         ║
║   Health:       http://{args.host}:{args.port}/health         ║
║                                                          ║
╚══════════════════════════════════════════════════════════╝
    """)

    uvicorn.run(
        "api.server:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
