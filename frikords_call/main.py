from __future__ import annotations

import argparse
import os
import sys

from .config import CallConfig
from .logging_config import setup_logging


def main(argv: list[str] | None = None) -> int:
	parser = argparse.ArgumentParser(description="Frikords call client")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use FRIKORDS_LOG_LEVEL.",
	)
	parser.add_argument(
		"--server-url",
		default=os.environ.get("FRIKORDS_SERVER_URL", "http://127.0.0.1:8787/"),
		help="Signal relay URL (http(s) for polling, ws(s) for push)",
	)
	parser.add_argument(
		"--token",
		default=os.environ.get("FRIKORDS_TOKEN", ""),
		help="Session token sent as X-Authorization: Bearer",
	)
	parser.add_argument(
		"--user-id",
		type=int,
		default=None,
		help="Own user id, shown in the window title",
	)
	parser.add_argument(
		"--name",
		default=os.environ.get("FRIKORDS_NAME", os.environ.get("USER", "")),
		help="Display name",
	)
	parser.add_argument(
		"--transport",
		choices=("http", "ws"),
		default=os.environ.get("FRIKORDS_TRANSPORT", "http"),
		help="Signal transport: HTTP polling or WebSocket push",
	)
	parser.add_argument(
		"--mic-id",
		default=None,
		help="Microphone device id (backend:device). Can also use FRIKORDS_MIC_ID.",
	)
	args = parser.parse_args(argv)

	setup_logging(args.log_level)

	call_cfg = CallConfig.from_env()
	if args.mic_id:
		call_cfg.mic_device_id = args.mic_id

	try:
		from .ui.app import AppConfig, FrikordsCallApp, create_qt_app
	except Exception as e:
		print(f"Failed to import UI dependencies: {e}")
		print("Install the client with: pip install -e .")
		return 2

	qt_app = create_qt_app()
	controller = FrikordsCallApp(
		AppConfig(
			server_url=args.server_url,
			token=args.token,
			transport=args.transport,
			name=args.name,
			user_id=args.user_id,
			call=call_cfg,
		)
	)
	controller.start()
	qt_app.aboutToQuit.connect(controller.shutdown)

	return qt_app.exec()


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
