"""Files injected into a guest rootfs: systemd units, env files, demo page."""

from __future__ import annotations

from html import escape
from typing import Sequence

AGENT_BINARY_PATH = "/usr/local/bin/fhvm-agent"
AGENT_ENV_PATH = "/etc/fhvm/agent.env"
AGENT_UNIT = "fhvm-agent.service"
WELCOME_DIR = "/opt/fhvm/welcome"
WELCOME_UNIT = "fhvm-welcome.service"


def agent_service_unit() -> str:
    return f"""[Unit]
Description=fhvm guest agent
After=network.target

[Service]
Type=simple
ExecStart={AGENT_BINARY_PATH}
EnvironmentFile={AGENT_ENV_PATH}
Restart=always
RestartSec=2

[Install]
WantedBy=multi-user.target
"""


def agent_env(token: str, port: int, vm_id: str) -> str:
    return f"FHVM_AGENT_TOKEN={token}\nFHVM_AGENT_PORT={port}\nFHVM_VM_ID={vm_id}\n"


def welcome_html(vm_id: str, ports: Sequence[int]) -> str:
    vm = escape(vm_id)
    port_items = "\n".join(f"      <li>{port}</li>" for port in ports)
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>fhvm VM {vm}</title>
  <style>
    body {{ font-family: system-ui, sans-serif; background: #0f172a; color: #e2e8f0; padding: 2rem; }}
    .card {{ background: #1e293b; border-radius: 12px; padding: 1.5rem; max-width: 640px; margin: auto; }}
    code {{ color: #f97316; }}
  </style>
</head>
<body>
  <div class="card">
    <h1>Your microVM is running</h1>
    <p>VM ID: <code>{vm}</code></p>
    <p>Published ports:</p>
    <ul>
{port_items}
    </ul>
    <p>Stop this page with <code>systemctl stop fhvm-welcome</code> and serve your own app on the published ports.</p>
  </div>
</body>
</html>
"""


def welcome_server(ports: Sequence[int]) -> str:
    listeners = "\n".join(
        f'http.createServer(handler).listen({port}, "0.0.0.0", () => '
        f'console.log("fhvm-welcome listening on 0.0.0.0:{port}"));'
        for port in ports
    )
    return f""""use strict";
const http = require("node:http");
const fs = require("node:fs");
const path = require("node:path");

const html = fs.readFileSync(path.join(__dirname, "index.html"), "utf-8");

function handler(req, res) {{
  res.writeHead(200, {{ "Content-Type": "text/html; charset=utf-8", "Cache-Control": "no-cache" }});
  res.end(html);
}}

{listeners}
"""


def welcome_service_unit(ports: Sequence[int]) -> str:
    return f"""[Unit]
Description=fhvm welcome page on port(s) {", ".join(str(p) for p in ports)}
After=network.target

[Service]
Type=simple
ExecStart=/usr/local/bin/node {WELCOME_DIR}/server.js
Restart=on-failure
RestartSec=2

[Install]
WantedBy=multi-user.target
"""
