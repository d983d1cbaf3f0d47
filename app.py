"""flashmorse web service.

Flask application plus the shared state the route modules work against:
the event queue feeding the SSE stream, its lock, and the message history
common to the send and receive sides.
"""

from __future__ import annotations

import queue
import threading

from flask import Flask, jsonify

from config import EVENT_QUEUE_SIZE, HISTORY_LIMIT, HOST, PORT, VERSION
from utils.logging import app_logger as logger
from utils.morse import MessageHistory

app = Flask(__name__)
app.config['JSON_SORT_KEYS'] = False

# Events for /morse/stream (receiver, sender, lifecycle).
morse_queue: queue.Queue = queue.Queue(maxsize=EVENT_QUEUE_SIZE)
morse_lock = threading.Lock()

message_history = MessageHistory(max_items=HISTORY_LIMIT)


@app.route('/health')
def health():
    return jsonify({'status': 'ok', 'version': VERSION})


def main() -> None:
    from routes import register_blueprints
    register_blueprints(app)

    logger.info('flashmorse %s listening on %s:%d', VERSION, HOST, PORT)
    app.run(host=HOST, port=PORT, threaded=True)


if __name__ == '__main__':
    main()
