#!/usr/bin/env python3
import sys
import os

print("Running preflight import check...")
try:
    # Set dummy env vars to avoid KeyErrors during config load if any
    os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

    import verifyflow.main
    print("Import verifyflow.main: OK")

    import verifyflow.queue.jobs
    print("Import verifyflow.queue.jobs: OK")

    from verifyflow.core.step_graph import get_graph
    graph = get_graph()
    print(f"Step graph: {len(graph.order)} steps, required={sorted(graph.required_steps())}")

    print("Preflight check passed.")
    sys.exit(0)
except Exception as e:
    print(f"Preflight check FAILED: {e}")
    import traceback
    traceback.print_exc()
    sys.exit(1)
