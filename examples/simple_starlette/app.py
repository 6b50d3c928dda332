"""Starlette app whose request counter survives hot reloads.

Run it with:

    hot-keeper run examples/simple_starlette/app.py --watch examples/simple_starlette

then edit the message below and reload the page: the counter keeps counting.
"""

import time
from datetime import datetime

from starlette.applications import Starlette
from starlette.responses import HTMLResponse
from starlette.routing import Route

from hot_keeper import keep, kept


def expensive_operation():
    print("Running expensive operation...")
    time.sleep(0.5)
    print("Expensive operation completed")
    return {"timestamp": time.time()}


# Runs once per process, not once per reload
expensive_result = kept("expensive_result") or expensive_operation()
keep("expensive_result", expensive_result)


async def homepage(request):
    counter = kept("counter", 0)
    keep("counter", counter + 1)

    computed_at = datetime.fromtimestamp(expensive_result["timestamp"])
    return HTMLResponse(f"""
    <html>
      <head><title>hot-keeper example</title></head>
      <body>
        <h1>hot-keeper example</h1>
        <p>Request count: <strong>{counter}</strong></p>
        <p>Edit me in app.py! The time is {datetime.now():%H:%M:%S}</p>
        <p>Expensive operation timestamp: {computed_at:%Y-%m-%d %H:%M:%S}</p>
      </body>
    </html>
    """)


app = Starlette(routes=[Route("/", homepage)])
