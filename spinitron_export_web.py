#!/usr/bin/env python3
import argparse
import os
import signal
import subprocess
import sys
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

_SCRIPT_DIR = Path(__file__).resolve().parent
EXPORT_SCRIPT = _SCRIPT_DIR / "spinitron_export.py"

_TEMPLATE_CANDIDATES = [
    _SCRIPT_DIR / "templates",
    Path(sys.prefix) / "share" / "spinitron-export" / "templates",
    Path("/opt/homebrew/share/spinitron-export/templates"),
    Path("/usr/local/share/spinitron-export/templates"),
]
_template_dir = None
for path in _TEMPLATE_CANDIDATES:
    if path.exists():
        _template_dir = path
        break
if _template_dir is None:
    raise RuntimeError("Template directory not found. Reinstall spinitron-export.")

TEMPLATES = Jinja2Templates(directory=str(_template_dir))

COVER_FILENAME = "cover.jpg"
COVER_TYPES = {"image/jpeg", "image/pjpeg"}
# a shell reports a signalled child as 128+N, Python's Popen as -N
CANCEL_SIGNALS = {signal.SIGTERM, signal.SIGINT}


@dataclass
class Job:
    id: str
    status: str
    output: str
    exit_code: int | None
    started_at: float
    argv: list[str]
    output_dir: str
    cover_path: Path | None = None
    process: subprocess.Popen | None = field(default=None, repr=False)


app = FastAPI(title="Spinitron Export")
_jobs: dict[str, Job] = {}
_jobs_lock = threading.Lock()


def classify_exit(returncode: int) -> str:
    if returncode == 0:
        return "done"
    if returncode < 0:
        signum = -returncode
    elif returncode > 128:
        signum = returncode - 128
    else:
        signum = None
    if signum in CANCEL_SIGNALS:
        return "cancelled"
    return "error"


def build_argv(
    url: str,
    fmt: str = "audio",
    debug: bool = False,
    show_name: str = "",
    duration: str = "",
    output_dir: str = ".",
) -> list[str]:
    argv = [sys.executable, str(EXPORT_SCRIPT), "--plain", "--output-dir", output_dir]
    if fmt == "youtube":
        argv.append("--youtube")
    if debug:
        argv.append("--debug")
    if show_name:
        argv.extend(["--show-name", show_name])
    if duration:
        argv.extend(["--duration", duration])
    argv.extend(["--", url])
    return argv


def _validate(url: str, output_dir: str) -> str | None:
    if not url:
        return "URL is required"
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return "URL must be an http(s) Spinitron playlist link"
    if not Path(output_dir).expanduser().is_dir():
        return f"Output directory does not exist: {output_dir}"
    return None


async def _save_cover(upload, output_dir: Path) -> tuple[Path | None, str]:
    """Write an uploaded cover to <output_dir>/cover.jpg; returns (path, log line)."""
    if upload is None or not getattr(upload, "filename", ""):
        return None, ""
    content_type = getattr(upload, "content_type", "") or ""
    if content_type not in COVER_TYPES:
        return None, f"Warning: ignoring cover upload of type '{content_type}'; the cover must be a JPEG.\n"
    target = output_dir / COVER_FILENAME
    try:
        data = await upload.read()
        target.write_bytes(data)
    except OSError as exc:
        return None, f"Warning: could not save cover image: {exc}\n"
    return target, f"Cover image saved to {target}\n"


def _read_output(job_id: str, proc: subprocess.Popen) -> None:
    for line in proc.stdout:
        with _jobs_lock:
            _jobs[job_id].output += line
    returncode = proc.wait()

    with _jobs_lock:
        job = _jobs[job_id]
        job.exit_code = returncode
        job.status = classify_exit(returncode)
        job.process = None
        cover = job.cover_path
    if cover is not None:
        cover.unlink(missing_ok=True)


def _launch(job: Job) -> None:
    env = dict(os.environ, PYTHONUNBUFFERED="1")
    try:
        proc = subprocess.Popen(
            job.argv,
            cwd=job.output_dir,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            env=env,
            start_new_session=True,
        )
    except OSError as exc:
        with _jobs_lock:
            job.output += f"Error: could not start export: {exc}\n"
            job.status = "error"
            job.exit_code = 1
        return
    with _jobs_lock:
        job.process = proc
    thread = threading.Thread(target=_read_output, args=(job.id, proc), daemon=True)
    thread.start()


@app.get("/")
def index(request: Request):
    return TEMPLATES.TemplateResponse(
        request,
        "index.html",
        {"request": request, "default_output_dir": str(Path.cwd())},
    )


@app.post("/run")
async def run_job(request: Request):
    form = await request.form()
    url = (form.get("url") or "").strip()
    output_dir = (form.get("output_dir") or "").strip() or str(Path.cwd())
    error = _validate(url, output_dir)
    if error:
        return JSONResponse({"error": error}, status_code=400)

    output_path = Path(output_dir).expanduser().resolve()
    argv = build_argv(
        url,
        fmt=(form.get("format") or "audio").strip(),
        debug=bool(form.get("debug")),
        show_name=(form.get("show_name") or "").strip(),
        duration=(form.get("duration") or "").strip(),
        output_dir=str(output_path),
    )
    cover_path, cover_note = await _save_cover(form.get("cover"), output_path)

    job_id = uuid.uuid4().hex[:10]
    job = Job(
        id=job_id,
        status="running",
        output=cover_note,
        exit_code=None,
        started_at=time.time(),
        argv=argv,
        output_dir=str(output_path),
        cover_path=cover_path,
    )
    with _jobs_lock:
        _jobs[job_id] = job

    _launch(job)
    return RedirectResponse(url=f"/job/{job_id}", status_code=303)


@app.get("/job/{job_id}")
def job_view(request: Request, job_id: str):
    return TEMPLATES.TemplateResponse(request, "job.html", {"request": request, "job_id": job_id})


@app.get("/jobs")
def jobs_view(request: Request):
    with _jobs_lock:
        jobs = sorted(_jobs.values(), key=lambda j: j.started_at, reverse=True)
    return TEMPLATES.TemplateResponse(request, "jobs.html", {"request": request, "jobs": jobs})


@app.get("/status/{job_id}")
def job_status(job_id: str):
    with _jobs_lock:
        job = _jobs.get(job_id)
        if not job:
            return JSONResponse({"error": "Not found"}, status_code=404)
        return JSONResponse(
            {
                "id": job.id,
                "status": job.status,
                "exit_code": job.exit_code,
                "output": job.output,
            }
        )


@app.post("/cancel/{job_id}")
def cancel_job(job_id: str):
    with _jobs_lock:
        job = _jobs.get(job_id)
        if not job:
            return JSONResponse({"error": "Not found"}, status_code=404)
        proc = job.process
    if proc is not None and proc.poll() is None:
        # the export runs in its own session; signal the group so ffmpeg stops too
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
    with _jobs_lock:
        return JSONResponse({"id": job.id, "status": job.status})


def run_web(host: str = "127.0.0.1", port: int = 8000) -> None:
    import uvicorn

    uvicorn.run("spinitron_export_web:app", host=host, port=port, reload=False)


def main():
    parser = argparse.ArgumentParser(description="Browser front end for spinitron-export")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on (default: 8000)")
    args = parser.parse_args()
    run_web(args.host, args.port)


if __name__ == "__main__":
    main()
