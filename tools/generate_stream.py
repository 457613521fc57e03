#!/usr/bin/env python3
"""Write an endless stream of operator-style JSON logs to stdout."""
import argparse
import datetime
import json
import random
import time

objects = [
    "/apis/cluster.x-k8s.io/v1alpha2/namespaces/default/machinedeployments/qihx8",
    "/apis/cluster.x-k8s.io/v1alpha2/namespaces/default/machinedeployments/a7k2p",
]
resources = ["accountid", "asgstatus", "drainer", "tccp", "cleanup"]
messages = [
    "finding out if node is drained",
    "found account id",
    "did not find any asg status",
    "ensuring tenant cluster control plane",
    "canceling resource",
]
stacks = [
    "[{/go/src/drainer/create.go:64: } {/go/src/drainer/create.go:80: node not drained}]",
    "tccp/create.go:112: cloudformation/stack.go:40: stack not found",
]
text_lines = [
    "W0101 10:00:00.000000       1 reflector.go:302] watch of *v1.Pod ended",
    "I0101 10:00:00.000000       1 leaderelection.go:242] attempting to acquire leader lease",
]


def generate_entry(loop):
    entry = {
        "time": datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="microseconds"),
        "level": "debug",
        "loop": str(loop),
        "object": random.choice(objects),
        "resource": random.choice(resources),
        "message": random.choice(messages),
    }
    if random.random() < 0.2:
        entry["level"] = random.choice(["warning", "error"])
        entry["stack"] = random.choice(stacks)
    return json.dumps(entry)


def generate_stream(count=0, interval=1.0, text_every=10):
    """Print count lines (0: forever), one every interval seconds."""
    n = 0
    while not count or n < count:
        n += 1
        if text_every and n % text_every == 0:
            print(random.choice(text_lines), flush=True)
        else:
            print(generate_entry(loop=1 + n // 5), flush=True)
        if interval:
            time.sleep(interval)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--count", type=int, default=0, help="number of lines, 0 for no limit")
    parser.add_argument("--interval", type=float, default=1.0, help="seconds between lines")
    parser.add_argument("--text-every", type=int, default=10, help="write a text line every N lines")
    parser.add_argument("--seed", type=int, help="seed for reproducible output")
    args = parser.parse_args()
    random.seed(args.seed)
    try:
        generate_stream(args.count, args.interval, args.text_every)
    except (BrokenPipeError, KeyboardInterrupt):
        pass
