"""
CAD Studio backend — entry point.

Usage:
    python -m cadstudio serve          # start web server on settings.host:settings.port
    python -m cadstudio serve --port 3000
"""

import sys


def main():
    from cadstudio.config import settings

    args = sys.argv[1:]
    cmd = args[0] if args else "serve"

    if cmd == "serve":
        port = settings.port
        host = settings.host
        for i, a in enumerate(args):
            if a == "--port" and i + 1 < len(args):
                port = int(args[i + 1])
            elif a == "--host" and i + 1 < len(args):
                host = args[i + 1]

        import uvicorn
        uvicorn.run("cadstudio.main:app", host=host, port=port)
    else:
        print(f"Unknown command: {cmd}")
        print("Usage: python -m cadstudio serve [--port PORT] [--host HOST]")
        sys.exit(1)


if __name__ == "__main__":
    main()
