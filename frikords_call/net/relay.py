"""Local call signal relay.

Implements the `call_signal` action of the chat backend for development and
tests:

    POST /?action=call_signal   {to, type, payload}        -> {ok, id}
    GET  /?action=call_signal                              -> {signals: [...]}
    GET  /ws                    push variant, same bodies over one socket

Mailboxes are fetch-and-clear: a signal is handed out once, by whichever of
poll or push reaches it first. Tokens are mapped to user ids up front.
"""

from __future__ import annotations

import argparse
import itertools
import json
import logging
import os
import sys
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set

import aiohttp
from aiohttp import web

from ..logging_config import setup_logging
from . import protocol


logger = logging.getLogger(__name__)


MAILBOX_LIMIT = 500


class SignalStore:
	def __init__(self, mailbox_limit: int = MAILBOX_LIMIT):
		self._ids = itertools.count(1)
		self._mailbox_limit = mailbox_limit
		self._mailboxes: Dict[int, Deque[protocol.Signal]] = {}
		self._subscribers: Dict[int, Set[web.WebSocketResponse]] = {}

	def pending(self, user_id: int) -> int:
		return len(self._mailboxes.get(user_id, ()))

	async def put(self, from_user: int, to_user: int, stype: str, payload: str) -> protocol.Signal:
		sig = protocol.Signal(
			id=next(self._ids),
			from_user_id=from_user,
			type=stype,
			payload=payload,
			to_user_id=to_user,
		)
		if await self._push(to_user, [sig]):
			return sig

		box = self._mailboxes.setdefault(to_user, deque(maxlen=self._mailbox_limit))
		if len(box) == box.maxlen:
			logger.warning("relay mailbox full user=%s dropping id=%s", to_user, box[0].id)
		box.append(sig)
		return sig

	def take(self, user_id: int) -> List[protocol.Signal]:
		box = self._mailboxes.pop(user_id, None)
		return list(box) if box else []

	async def subscribe(self, user_id: int, ws: web.WebSocketResponse) -> None:
		self._subscribers.setdefault(user_id, set()).add(ws)
		backlog = self.take(user_id)
		if backlog and not await self._push(user_id, backlog):
			self._mailboxes.setdefault(user_id, deque(maxlen=self._mailbox_limit)).extendleft(reversed(backlog))

	def unsubscribe(self, user_id: int, ws: web.WebSocketResponse) -> None:
		subs = self._subscribers.get(user_id)
		if subs is None:
			return
		subs.discard(ws)
		if not subs:
			self._subscribers.pop(user_id, None)

	async def _push(self, user_id: int, batch: List[protocol.Signal]) -> bool:
		body = {"signals": [protocol.signal_to_json(s) for s in batch]}
		for ws in list(self._subscribers.get(user_id, ())):
			if ws.closed:
				continue
			try:
				await ws.send_json(body)
				return True
			except ConnectionResetError:
				logger.debug("relay push failed user=%s", user_id)
		return False


STORE_KEY = web.AppKey("signal_store", SignalStore)
TOKENS_KEY = web.AppKey("tokens", dict)


def _bearer_token(request: web.Request) -> Optional[str]:
	header = request.headers.get("X-Authorization") or request.headers.get("Authorization") or ""
	if header.lower().startswith("bearer "):
		return header[7:].strip() or None
	return request.query.get("token") or None


def _authenticate(request: web.Request) -> int:
	token = _bearer_token(request)
	tokens: Dict[str, int] = request.app[TOKENS_KEY]
	if token is None or token not in tokens:
		raise web.HTTPUnauthorized(
			text=json.dumps({"error": "unauthorized"}),
			content_type="application/json",
		)
	return tokens[token]


def _check_action(request: web.Request) -> None:
	if request.query.get("action") != "call_signal":
		raise web.HTTPBadRequest(
			text=json.dumps({"error": "Unknown action"}),
			content_type="application/json",
		)


def _validate_send(body: Any) -> tuple[int, str, str]:
	if not isinstance(body, dict):
		raise protocol.ProtocolError("body must be an object")
	try:
		to_user = int(body["to"])
	except (KeyError, TypeError, ValueError):
		raise protocol.ProtocolError("'to' must be a user id")
	stype = body.get("type")
	if stype not in protocol.SIGNAL_TYPES:
		raise protocol.ProtocolError(f"unknown signal type {stype!r}")
	payload = body.get("payload") or ""
	if not isinstance(payload, str):
		raise protocol.ProtocolError("'payload' must be a string")
	return to_user, str(stype), payload


async def handle_send(request: web.Request) -> web.Response:
	_check_action(request)
	user_id = _authenticate(request)
	try:
		to_user, stype, payload = _validate_send(await request.json())
	except json.JSONDecodeError:
		return web.json_response({"error": "invalid json"}, status=400)
	except protocol.ProtocolError as e:
		return web.json_response({"error": e.message}, status=400)

	sig = await request.app[STORE_KEY].put(user_id, to_user, stype, payload)
	logger.info("relay signal id=%s type=%s from=%s to=%s", sig.id, stype, user_id, to_user)
	return web.json_response({"ok": True, "id": sig.id})


async def handle_poll(request: web.Request) -> web.Response:
	_check_action(request)
	user_id = _authenticate(request)
	batch = request.app[STORE_KEY].take(user_id)
	if batch:
		logger.debug("relay poll user=%s delivered=%s", user_id, len(batch))
	return web.json_response({"signals": [protocol.signal_to_json(s) for s in batch]})


async def handle_ws(request: web.Request) -> web.WebSocketResponse:
	user_id = _authenticate(request)
	store = request.app[STORE_KEY]

	ws = web.WebSocketResponse(heartbeat=20.0)
	await ws.prepare(request)
	await store.subscribe(user_id, ws)
	logger.info("relay ws connected user=%s", user_id)

	try:
		async for msg in ws:
			if msg.type == aiohttp.WSMsgType.TEXT:
				try:
					to_user, stype, payload = _validate_send(json.loads(msg.data))
				except json.JSONDecodeError:
					await ws.send_json({"error": "invalid json"})
					continue
				except protocol.ProtocolError as e:
					await ws.send_json({"error": e.message})
					continue
				sig = await store.put(user_id, to_user, stype, payload)
				logger.info("relay signal id=%s type=%s from=%s to=%s via=ws", sig.id, stype, user_id, to_user)
			elif msg.type == aiohttp.WSMsgType.ERROR:
				logger.warning("relay ws error user=%s: %s", user_id, ws.exception())
	finally:
		store.unsubscribe(user_id, ws)
		logger.info("relay ws disconnected user=%s", user_id)
	return ws


def create_app(tokens: Dict[str, int], *, mailbox_limit: int = MAILBOX_LIMIT) -> web.Application:
	app = web.Application()
	app[STORE_KEY] = SignalStore(mailbox_limit=mailbox_limit)
	app[TOKENS_KEY] = dict(tokens)
	app.router.add_post("/", handle_send)
	app.router.add_get("/", handle_poll)
	app.router.add_get("/ws", handle_ws)
	return app


def parse_user_arg(value: str) -> tuple[str, int]:
	token, sep, uid = value.partition("=")
	if not sep or not token:
		raise argparse.ArgumentTypeError("expected TOKEN=USER_ID")
	try:
		return token, int(uid)
	except ValueError:
		raise argparse.ArgumentTypeError(f"user id must be an integer: {uid!r}")


def main(argv: list[str] | None = None) -> int:
	parser = argparse.ArgumentParser(description="Frikords call signal relay")
	parser.add_argument("--host", default=os.environ.get("FRIKORDS_RELAY_HOST", "127.0.0.1"))
	parser.add_argument("--port", type=int, default=int(os.environ.get("FRIKORDS_RELAY_PORT", "8787")))
	parser.add_argument(
		"--user",
		action="append",
		type=parse_user_arg,
		default=[],
		metavar="TOKEN=USER_ID",
		help="Accept TOKEN as bearer token for USER_ID (repeatable)",
	)
	parser.add_argument("--log-level", default=None)
	args = parser.parse_args(argv)

	setup_logging(args.log_level)
	if not args.user:
		parser.error("at least one --user TOKEN=USER_ID is required")

	web.run_app(create_app(dict(args.user)), host=args.host, port=args.port)
	return 0


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
