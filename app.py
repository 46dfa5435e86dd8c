#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Donation payments service launcher (dev).

  python3 app.py --env development
  python3 -m flask --app wsgi:app payments gateway-mode
  gunicorn "wsgi:app"
"""

from __future__ import annotations

import argparse
import os


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Run the donation payments service.")
    p.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    p.add_argument("--port", type=int, default=int(os.getenv("PORT", "5000")))
    p.add_argument("--env", choices=["development", "testing", "production"], help="Runtime environment")
    p.add_argument("--config", help="Explicit config name or dotted path")
    p.add_argument("--no-reload", action="store_true", help="Disable the Werkzeug reloader.")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    if args.env:
        os.environ["ENV"] = args.env

    from avr import create_app

    flask_app = create_app(args.config or args.env)
    debug = flask_app.config.get("ENV") != "production"
    flask_app.run(host=args.host, port=args.port, debug=debug, use_reloader=debug and not args.no_reload)


if __name__ == "__main__":
    main()
