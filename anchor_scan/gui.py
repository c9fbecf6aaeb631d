#
# anchor-scan - BLE anchor that runs server-issued beacon scan jobs
#

"""Flask + SocketIO operator status page."""

import asyncio
import logging
import os
import socket
import threading
import time
import webbrowser
from typing import Optional

from flask import Flask, jsonify, render_template_string
from flask_socketio import SocketIO

logger = logging.getLogger(__name__)

_EMIT_INTERVAL = 0.25   # seconds between pushed snapshots
_PORT_SEARCH = 11       # requested port plus the next ten

_GUI_HTML = r"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>anchor-scan</title>
<style>
body{background:#0a0a0a;color:#e0e0e0;font-family:Consolas,'Courier New',monospace;
  font-size:13px;margin:0}
#header{padding:10px 16px;background:#111;border-bottom:1px solid #333}
#header .title{color:#00ff41;font-weight:700;font-size:16px}
#header .meta{color:#666;font-size:11px}
#status{font-size:15px;margin:6px 0}
progress{width:100%;height:6px}
#panels{display:flex;gap:16px;padding:12px 16px}
.panel{flex:1;min-width:0}
.panel h2{color:#00e5ff;font-size:12px;letter-spacing:1px;text-transform:uppercase}
table{width:100%;border-collapse:collapse}
td,th{text-align:left;padding:3px 6px;border-bottom:1px solid #1a1a1a}
th{color:#666;font-weight:400}
td.details{max-width:320px;overflow:hidden;text-overflow:ellipsis;white-space:nowrap}
button{background:#1a1a1a;color:#00ff41;border:1px solid #333;padding:4px 10px;cursor:pointer}
button:disabled{color:#666;cursor:default}
</style>
</head>
<body>
<div id="header">
  <div class="title">ANCHOR-SCAN</div>
  <div class="meta">Anchor ID: <span id="anchor"></span></div>
  <div id="status">Connecting...</div>
  <progress id="progress" max="1" value="0" hidden></progress>
</div>
<div id="panels">
  <div class="panel">
    <h2>Matched Tags</h2>
    <table><thead><tr><th>Tag</th><th>UUID</th><th>RSSI</th><th>Last seen</th></tr></thead>
    <tbody id="tags"></tbody></table>
  </div>
  <div class="panel">
    <h2>All Devices (Debug) <button id="debug">Debug scan</button></h2>
    <table><thead><tr><th>Name</th><th>Address</th><th>RSSI</th><th>Details</th><th>Last seen</th></tr></thead>
    <tbody id="devices"></tbody></table>
  </div>
</div>
<script src="https://cdn.socket.io/4.7.5/socket.io.min.js"></script>
<script>
function esc(s){return String(s).replace(/[&<>"]/g,c=>({'&':'&amp;','<':'&lt;','>':'&gt;','"':'&quot;'}[c]))}
function render(st){
  document.getElementById('anchor').textContent=st.anchor_id;
  document.getElementById('status').textContent=st.status;
  const p=document.getElementById('progress');
  p.hidden=!st.job_scanning;p.value=st.progress;
  document.getElementById('debug').disabled=st.job_scanning||st.debug_scanning;
  document.getElementById('tags').innerHTML=st.matched_tags.map(t=>
    `<tr><td>${esc(t.tag_id)}</td><td>${esc(t.uuid)}</td><td>${t.rssi} dBm</td><td>${esc(t.last_seen)}</td></tr>`).join('');
  document.getElementById('devices').innerHTML=st.devices.map(d=>
    `<tr><td>${esc(d.name)}</td><td>${esc(d.address)}</td><td>${d.rssi} dBm</td>`+
    `<td class="details" title="${esc(d.details)}">${esc(d.details)}</td><td>${esc(d.last_seen)}</td></tr>`).join('');
}
function refresh(){fetch('/api/state').then(r=>r.json()).then(render).catch(()=>{})}
document.getElementById('debug').onclick=()=>fetch('/api/debug-scan',{method:'POST'}).then(refresh);
const sock=io();
sock.on('state',render);
refresh();setInterval(refresh,2000);
</script>
</body>
</html>
"""


class GuiServer:
    """Serves orchestrator snapshots and accepts debug-scan requests.

    Runs in a background thread; everything that touches the orchestrator
    is handed to its event loop.
    """

    def __init__(self, orchestrator, loop: asyncio.AbstractEventLoop,
                 port: int = 5000, open_browser: bool = True):
        self._orchestrator = orchestrator
        self._loop = loop
        self._port = port
        self._open_browser = open_browser
        self._app = Flask(__name__)
        self._app.config['SECRET_KEY'] = os.urandom(24).hex()
        self._sio = SocketIO(self._app, async_mode='threading', cors_allowed_origins='*')
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._state: dict = orchestrator.snapshot()
        self._last_emit = 0.0
        self._unsubscribe = None
        self._setup_routes()

    @property
    def port(self) -> int:
        return self._port

    @property
    def app(self) -> Flask:
        return self._app

    def _setup_routes(self):
        @self._app.route('/')
        def index():
            return render_template_string(_GUI_HTML)

        @self._app.route('/api/state')
        def state():
            with self._lock:
                return jsonify(self._state)

        @self._app.route('/api/debug-scan', methods=['POST'])
        def debug_scan():
            if not self._orchestrator.can_start_debug_scan():
                return jsonify({'started': False,
                                'reason': 'scan or poll in progress'}), 409
            asyncio.run_coroutine_threadsafe(
                self._orchestrator.run_debug_scan(), self._loop)
            return jsonify({'started': True}), 202

    def publish(self, snapshot: dict):
        """Subscriber callback: store the snapshot and push it, rate limited."""
        with self._lock:
            self._state = snapshot
        now = time.time()
        if now - self._last_emit >= _EMIT_INTERVAL:
            self._last_emit = now
            self._sio.emit('state', snapshot)

    def start(self):
        """Start the Flask server in a background thread."""
        ready = threading.Event()
        result = {'port': -1}

        def _serve():
            for p in range(self._port, self._port + _PORT_SEARCH):
                # probe the port before committing
                probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                try:
                    probe.bind(('0.0.0.0', p))
                except OSError:
                    continue
                finally:
                    probe.close()
                result['port'] = p
                ready.set()
                try:
                    self._sio.run(self._app, host='0.0.0.0', port=p,
                                  allow_unsafe_werkzeug=True,
                                  log_output=False)
                except OSError as e:
                    logger.error("GUI server stopped: %s", e)
                return
            ready.set()

        self._thread = threading.Thread(target=_serve, daemon=True)
        self._thread.start()
        ready.wait(timeout=5)
        if result['port'] == -1:
            raise OSError(f"Could not find an open port for the GUI server "
                          f"in {self._port}-{self._port + _PORT_SEARCH - 1}")
        self._port = result['port']
        self._unsubscribe = self._orchestrator.subscribe(self.publish)

        url = f"http://localhost:{self._port}"
        logger.info("GUI server started at %s", url)
        if self._open_browser:
            try:
                webbrowser.open(url)
            except webbrowser.Error:
                logger.info("Could not open browser, navigate to %s", url)

    def stop(self):
        """Stop pushing snapshots; the daemon server thread dies with the process."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
