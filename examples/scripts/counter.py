#!/usr/bin/env python3
"""
A small account/counter CLI to demonstrate featurespec testing.
Every command prints JSON; state is kept in counter_state.json.
"""
import argparse
import json
import sys
import time
from pathlib import Path

STATE_FILE = Path("counter_state.json")


def load_state():
    if STATE_FILE.exists():
        return json.loads(STATE_FILE.read_text())
    return {"accounts": [], "counters": {}}


def save_state(state):
    STATE_FILE.write_text(json.dumps(state, indent=2))


def account_create(args, state):
    address = "0x" + f"{len(state['accounts']) + 1:x}".rjust(8, "0")
    state["accounts"].append(address)
    return {"address": address, "active": True}


def account_list(args, state):
    return [{"address": a} for a in state["accounts"]]


def counter_key(args, state):
    module = args.function.rsplit("::", 1)[0]
    if args.sender_account not in state["accounts"]:
        print(f"Error: unknown account {args.sender_account}", file=sys.stderr)
        sys.exit(1)
    return f"{args.sender_account}/{module}"


def move_run(args, state):
    key = counter_key(args, state)
    action = args.function.rsplit("::", 1)[1]
    if action == "init":
        state["counters"][key] = 0
    elif action == "increase":
        if key not in state["counters"]:
            print("Error: counter not initialized", file=sys.stderr)
            sys.exit(1)
        state["counters"][key] += 1
    else:
        print(f"Error: unknown function {args.function}", file=sys.stderr)
        sys.exit(1)
    return {"execution_info": {"status": {"type": "executed"}}}


def move_view(args, state):
    key = counter_key(args, state)
    return [{"move_value": state["counters"].get(key, 0), "type_tag": "u64"}]


def server_start(args, state):
    print("counter server listening", flush=True)
    while True:
        time.sleep(1)


def main():
    parser = argparse.ArgumentParser(description="Counter demo CLI")
    sub = parser.add_subparsers(dest="group", required=True)

    account = sub.add_parser("account").add_subparsers(dest="action", required=True)
    account.add_parser("create").set_defaults(handler=account_create)
    account.add_parser("list").set_defaults(handler=account_list)

    move = sub.add_parser("move").add_subparsers(dest="action", required=True)
    for name, handler in (("run", move_run), ("view", move_view)):
        action = move.add_parser(name)
        action.add_argument("--function", required=True)
        action.add_argument("--sender-account", required=True)
        action.set_defaults(handler=handler)

    server = sub.add_parser("server").add_subparsers(dest="action", required=True)
    server.add_parser("start").set_defaults(handler=server_start)

    args = parser.parse_args()
    state = load_state()
    output = args.handler(args, state)
    save_state(state)
    print(json.dumps(output))


if __name__ == "__main__":
    main()
