from __future__ import annotations
import argparse, json, sys
from datetime import datetime

from globalchat.client import DEFAULT_SERVER, ChatClient, ChatClientError
from globalchat.config import DB_PATH
from globalchat.db import SqliteStore


def _fmt(msg: dict) -> str:
    ts = datetime.fromtimestamp(msg["timestamp"] / 1000).strftime("%H:%M:%S")
    return f"[{ts}] {msg['username']}: {msg['text']}"


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="GlobalChat CLI")
    p.add_argument("--server", default=DEFAULT_SERVER, help="Server base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    regp = sub.add_parser("register", help="Register a username and print the token")
    regp.add_argument("--name", required=True)

    sayp = sub.add_parser("say", help="Post a message")
    sayp.add_argument("--token", required=True)
    sayp.add_argument("text")

    sub.add_parser("history", help="Print the stored messages")
    sub.add_parser("stats", help="Print the online count")
    sub.add_parser("listen", help="Follow the live stream")

    expp = sub.add_parser("export", help="Dump the local store as JSON")
    expp.add_argument("--db", default=DB_PATH)
    expp.add_argument("--out", default="-", help="Output file ('-' for stdout)")

    impp = sub.add_parser("import", help="Replace the local store from a JSON dump (e.g. db.json)")
    impp.add_argument("--db", default=DB_PATH)
    impp.add_argument("file")
    return p


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if args.cmd in ("export", "import"):
        store = SqliteStore(args.db)
        store.load()
        if args.cmd == "export":
            dump = json.dumps(store.export_state(), indent=2)
            if args.out == "-":
                print(dump)
            else:
                with open(args.out, "w", encoding="utf-8") as f:
                    f.write(dump)
                print(f"Exported to {args.out}")
        else:
            with open(args.file, encoding="utf-8") as f:
                n = store.import_state(json.load(f))
            print(f"Imported {n} messages into {args.db}")
        return 0

    with ChatClient(args.server) as client:
        try:
            if args.cmd == "register":
                data = client.register(args.name)
                print(f"Registered as {data['username']}")
                print(f"Token: {data['token']}")
            elif args.cmd == "say":
                client.token = args.token
                print(_fmt(client.post(args.text)))
            elif args.cmd == "history":
                for m in client.messages():
                    print(_fmt(m))
            elif args.cmd == "stats":
                print(f"Online: {client.stats()}")
            elif args.cmd == "listen":
                for event, data in client.events():
                    if event == "connected":
                        for m in data["messages"]:
                            print(_fmt(m))
                    elif event == "message":
                        print(_fmt(data))
        except ChatClientError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 1
        except KeyboardInterrupt:
            pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
