#!/usr/bin/env python3
"""
EvoTrader Dashboard Backend - Main Entry Point

Usage:
    python app.py              # Start API server on port 5050 (or $PORT)
    python app.py --port 8080  # Custom port
"""

import os
import sys


def main():
    # Hosting platforms set PORT; fall back to 5050 for local dev
    port = int(os.environ.get('PORT', 5050))

    for i, arg in enumerate(sys.argv):
        if arg == '--port' and i + 1 < len(sys.argv):
            port = int(sys.argv[i + 1])

    print(f"""
    ╔═══════════════════════════════════════════════════════╗
    ║           EVOTRADER DASHBOARD BACKEND                 ║
    ╠═══════════════════════════════════════════════════════╣
    ║  Starting server on http://localhost:{port}             ║
    ║  Press Ctrl+C to stop                                 ║
    ╚═══════════════════════════════════════════════════════╝
    """)

    # Use gunicorn in production if available, fall back to Flask dev server
    try:
        from gunicorn.app.base import BaseApplication

        class StandaloneApplication(BaseApplication):
            def __init__(self, options=None):
                self.options = options or {}
                super().__init__()

            def load_config(self):
                for key, value in self.options.items():
                    if key in self.cfg.settings and value is not None:
                        self.cfg.set(key.lower(), value)

            def load(self):
                # Runs inside the worker (after fork) so the poller and
                # realtime threads live in the process serving requests
                from evotrader.web.app import create_server_app
                return create_server_app()

        options = {
            'bind': f'0.0.0.0:{port}',
            'workers': 1,          # Single worker (poller cache is in-process)
            'threads': 4,
            'timeout': 120,
        }
        print("[STARTUP] Using gunicorn production server")
        StandaloneApplication(options).run()
    except ImportError:
        print("[STARTUP] gunicorn not installed, using Flask dev server (not for production)")
        from evotrader.web.app import create_server_app
        app = create_server_app()
        app.run(host='0.0.0.0', port=port, debug=False)


if __name__ == '__main__':
    main()
