# dashboard.py
import html
import os

from fastapi import FastAPI, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse

from models import JobStatus, utc_now
from selector import blocked_reason
from storage import DEFAULT_CONFIG, Storage

# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #2196F3; }
  .container { padding: 20px; }
  .navbar { background: #1976D2; padding: 10px 20px; display: flex; gap: 20px; }
  .navbar a { color: white; text-decoration: none; font-weight: bold; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(220px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
"""


def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head>
      <title>{title}</title>
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{title}</h1>
      <div class="navbar">
        <a href="/">🏠 Queue</a>
        <a href="/metrics/json">📈 Metrics</a>
        <a href="/config">⚙ Config</a>
      </div>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


def _job_view(job, snapshot, now):
    data = job.to_dict()
    data["blocked_reason"] = blocked_reason(job, snapshot, set(), now) if job.status == JobStatus.pending else None
    return data


def status_counts(snapshot):
    return {s.value: sum(1 for job in snapshot if job.status == s) for s in JobStatus}


def create_app(db: Storage) -> FastAPI:
    app = FastAPI(title="renderq dashboard")

    # ---------- Home ----------
    @app.get("/", response_class=HTMLResponse)
    def home():
        snapshot = db.snapshot()
        now = utc_now()
        counts = status_counts(snapshot)
        cards = "".join(
            f'<div class="card"><h3>{name.title()}</h3><p>{count}</p></div>' for name, count in counts.items()
        )
        table_html = """
        <h2>Queue</h2>
        <table>
          <tr><th>ID</th><th>Command</th><th>Status</th><th>Priority</th><th>Run at</th><th>Progress</th><th>Blocked</th></tr>
        """
        for job in snapshot:
            view = _job_view(job, snapshot, now)
            pct = job.progress.get("progress")
            progress = f"{pct:.1f}%" if isinstance(pct, (int, float)) else "-"
            table_html += (
                f"<tr><td><a href='/jobs/{html.escape(job.id)}'>{html.escape(job.id)}</a></td>"
                f"<td>{html.escape(job.command)}</td><td>{job.status.value}</td><td>{job.priority}</td>"
                f"<td>{view['scheduled_time'] or '-'}</td><td>{progress}</td>"
                f"<td>{html.escape(view['blocked_reason'] or '-')}</td></tr>"
            )
        table_html += "</table>"
        if not snapshot:
            table_html += "<p class='muted'>No jobs in the queue.</p>"
        return page("📊 Render Queue", f'<div class="cards">{cards}</div>' + table_html)

    # ---------- JSON APIs ----------
    @app.get("/jobs", response_class=JSONResponse)
    def list_jobs(status: str = None):
        snapshot = db.snapshot()
        now = utc_now()
        return [_job_view(job, snapshot, now) for job in snapshot if status is None or job.status.value == status]

    @app.get("/jobs/{job_id}", response_class=JSONResponse)
    def job_detail(job_id: str):
        snapshot = db.snapshot()
        for job in snapshot:
            if job.id == job_id:
                return _job_view(job, snapshot, utc_now())
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

    @app.get("/metrics/json", response_class=JSONResponse)
    def metrics_json():
        return status_counts(db.snapshot())

    @app.get("/config", response_class=JSONResponse)
    def config_json():
        return {**DEFAULT_CONFIG, **{key: value for key, value, _ in db.list_config()}}

    return app


# `uvicorn dashboard:app` serves the queue named by RENDERQ_DB
app = create_app(Storage(os.environ.get("RENDERQ_DB", "queue.db")))
