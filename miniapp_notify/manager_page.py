from __future__ import annotations

import html
import secrets
from string import Template


_PAGE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width,initial-scale=1" />
  <title>Notifications Manager</title>
  <style>
    :root { color-scheme: dark; }
    body { margin: 0; background: #0b0f14; color: rgba(255,255,255,0.92); font-family: ui-sans-serif, system-ui, Arial; }
    .wrap { max-width: 980px; margin: 0 auto; padding: 16px; }
    .card { border: 1px solid rgba(255,255,255,0.12); border-radius: 14px; padding: 14px; margin-top: 12px; }
    .row { display: flex; gap: 12px; flex-wrap: wrap; align-items: center; }
    input, textarea, button { box-sizing: border-box; background: rgba(0,0,0,0.35); color: inherit;
      border: 1px solid rgba(255,255,255,0.14); border-radius: 12px; padding: 10px 12px; }
    input, textarea { width: 100%; margin-top: 10px; }
    button { cursor: pointer; font-weight: 800; }
    .muted { color: rgba(255,255,255,0.62); font-size: 12.5px; }
    table { width: 100%; border-collapse: collapse; font-size: 13px; }
    th, td { padding: 8px; border-bottom: 1px solid rgba(255,255,255,0.10); text-align: left; }
  </style>
</head>
<body>
  <div class="wrap">
    <h2>Notifications Manager</h2>
    <div class="muted">http://localhost:$port · auth header: <code>x-editor-token</code></div>

    <div class="card">
      <input id="token" placeholder="EDITOR_TOKEN" />
      <div class="row" style="margin-top:10px;">
        <button id="saveToken">Save token</button>
        <button id="health">Health check</button>
      </div>
      <div class="muted" id="healthOut"></div>
    </div>

    <div class="card">
      <input id="title" value="NFT Season" />
      <textarea id="body">server ping</textarea>
      <input id="targetUrl" value="$miniapp_origin" />
      <input id="notificationId" value="$notification_id" />
      <div class="row" style="margin-top:10px;">
        <button id="sendTest">Send test to $test_fid</button>
        <button id="sendBroadcast">Broadcast to enabled</button>
      </div>
      <div class="muted" id="sendOut"></div>
    </div>

    <div class="card">
      <button id="loadSubs">Refresh subscribers</button>
      <div class="muted" id="subsMeta"></div>
      <table><thead><tr><th>fid</th><th>enabled</th><th>token</th><th>url</th><th>updated</th></tr></thead>
      <tbody id="subsTbody"></tbody></table>
    </div>

    <div class="card">
      <button id="loadEvents">Refresh webhook events</button>
      <div class="muted" id="eventsMeta"></div>
      <table><thead><tr><th>time</th><th>event</th><th>fid</th><th>token</th><th>url</th></tr></thead>
      <tbody id="eventsTbody"></tbody></table>
    </div>
  </div>

  <script nonce="$nonce">
    const $$ = (id) => document.getElementById(id);
    const TOKEN_KEY = "notifyManagerEditorToken";
    const esc = (v) => String(v ?? "").replace(/[&<>"']/g, (c) => "&#" + c.charCodeAt(0) + ";");

    const api = async (path, opts = {}) => {
      const t = (localStorage.getItem(TOKEN_KEY) || "").trim();
      const headers = Object.assign({}, opts.headers || {}, t ? { "x-editor-token": t } : {});
      const res = await fetch(path, Object.assign({}, opts, { headers }));
      const json = await res.json().catch(() => null);
      if (!res.ok) throw new Error((json && json.error) || ("HTTP " + res.status));
      return json.result;
    };

    const fill = (tbodyId, rows, cells) => {
      $$(tbodyId).innerHTML = rows.map((r) => "<tr>" + cells(r).map((c) => "<td>" + esc(c) + "</td>").join("") + "</tr>").join("");
    };

    const refreshSubs = async () => {
      try {
        const r = await api("/api/subscribers?perPage=50&page=1");
        $$("subsMeta").textContent = "Showing " + r.rows.length + " of " + r.total;
        fill("subsTbody", r.rows, (x) => [x.fid, x.enabled ? "on" : "off", x.token_masked, x.notification_url, x.updated_at]);
      } catch (e) { $$("subsMeta").textContent = "Error: " + e.message; }
    };

    const refreshEvents = async () => {
      try {
        const r = await api("/api/events?perPage=50&page=1");
        $$("eventsMeta").textContent = "Showing " + r.rows.length + " of " + r.total;
        fill("eventsTbody", r.rows, (x) => [x.received_at, x.event, x.fid, x.token_masked, x.notification_url]);
      } catch (e) { $$("eventsMeta").textContent = "Error: " + e.message; }
    };

    const gatherSend = () => ({
      title: $$("title").value, body: $$("body").value,
      targetUrl: $$("targetUrl").value, notificationId: $$("notificationId").value,
    });

    const post = (path) => api(path, {
      method: "POST", headers: { "content-type": "application/json" }, body: JSON.stringify(gatherSend()),
    });

    $$("saveToken").onclick = () => localStorage.setItem(TOKEN_KEY, ($$("token").value || "").trim());
    $$("health").onclick = async () => {
      try { const r = await api("/api/health"); $$("healthOut").textContent = "OK · " + (r.now || ""); }
      catch (e) { $$("healthOut").textContent = "Error: " + e.message; }
    };
    $$("sendTest").onclick = async () => {
      try {
        const r = await post("/api/send/test");
        $$("sendOut").textContent = (r.rateLimitedTokens || []).length
          ? "rate limited, try again"
          : "HTTP " + r.httpStatus + " · ok=" + r.successfulTokens.length + " invalid=" + r.invalidTokens.length;
      } catch (e) { $$("sendOut").textContent = "Error: " + e.message; }
    };
    $$("sendBroadcast").onclick = async () => {
      try {
        const r = await post("/api/send/broadcast");
        $$("sendOut").textContent = r.rateLimited
          ? "rate limited, try again"
          : "Broadcast done · groups=" + r.groups + " pruned=" + r.invalidTokensPruned;
        await refreshSubs();
      } catch (e) { $$("sendOut").textContent = "Error: " + e.message; }
    };
    $$("loadSubs").onclick = refreshSubs;
    $$("loadEvents").onclick = refreshEvents;

    $$("token").value = localStorage.getItem(TOKEN_KEY) || "";
    refreshSubs();
    refreshEvents();
  </script>
</body>
</html>
"""
)


def content_security_policy(nonce: str) -> str:
    return "; ".join(
        [
            "default-src 'self'",
            f"script-src 'nonce-{nonce}'",
            "style-src 'self' 'unsafe-inline'",
            "connect-src 'self'",
            "img-src 'self' data:",
            "base-uri 'none'",
            "form-action 'self'",
            "frame-ancestors 'none'",
        ]
    )


def new_nonce() -> str:
    return secrets.token_urlsafe(16)


def render_manager_page(
    *,
    port: int,
    default_notification_id: str,
    miniapp_origin: str,
    test_fid: int,
    nonce: str,
) -> str:
    return _PAGE.substitute(
        port=port,
        notification_id=html.escape(default_notification_id, quote=True),
        miniapp_origin=html.escape(miniapp_origin, quote=True),
        test_fid=test_fid,
        nonce=nonce,
    )
