"""HTML report generator: produces a self-contained page for one scenario run."""

from __future__ import annotations

import base64
import html
import logging
from pathlib import Path

from vmregress.models.result import ScenarioResult, StepResult, format_duration

logger = logging.getLogger(__name__)

_STATUS_COLORS = {
    "passed": "#22c55e",
    "failed": "#ef4444",
    "skipped": "#eab308",
    "error": "#f97316",
    "timeout": "#f97316",
}


def _embed_image(path: str) -> str:
    """Read an image file and return a base64 data URI, or empty string on failure."""
    try:
        p = Path(path)
        if not p.exists() or p.stat().st_size == 0:
            return ""
        with open(p, "rb") as f:
            data = base64.b64encode(f.read()).decode()
        suffix = p.suffix.lower()
        mime = "image/png" if suffix == ".png" else "image/jpeg" if suffix in (".jpg", ".jpeg") else "image/webp"
        return f"data:{mime};base64,{data}"
    except OSError as e:
        logger.debug("Could not embed %s: %s", path, e)
        return ""


def _build_step_card(r: StepResult) -> str:
    status = r.status.value
    border_color = _STATUS_COLORS.get(status, "#94a3b8")
    exit_code = "&ndash;" if r.exit_code is None else str(r.exit_code)

    card = f'''
    <div class="step-card" data-status="{status}">
      <div class="step-header" style="border-left: 4px solid {border_color};" onclick="this.parentElement.classList.toggle('expanded')">
        <div class="step-header-left">
          <span class="badge {status}">{status.upper()}</span>
          <strong>{html.escape(r.step_name)}</strong>
          <span class="step-meta">{html.escape(r.vm_name)} &middot; {format_duration(r.duration)} &middot; exit {exit_code}</span>
        </div>
        <span class="expand-arrow">&#9660;</span>
      </div>
      <div class="step-body">
    '''

    if r.error_message:
        card += f'<div class="failure-banner"><strong>Error:</strong> {html.escape(r.error_message)}</div>'

    if r.output:
        card += f'<div class="section"><h4>Output</h4><pre class="console-log">{html.escape(r.output)}</pre></div>'

    if r.screenshot_paths:
        card += '<div class="section"><h4>Screenshots</h4><div class="screenshots-grid">'
        for path in r.screenshot_paths:
            data_uri = _embed_image(path)
            if not data_uri:
                continue
            card += f'''
            <div class="screenshot-item">
              <img src="{data_uri}" alt="screenshot" onclick="this.classList.toggle('zoomed')"/>
              <div class="screenshot-label">{html.escape(Path(path).name)}</div>
            </div>'''
        card += '</div></div>'

    if r.collected_file_paths:
        items = "".join(
            f"<li><code>{html.escape(p)}</code></li>" for p in r.collected_file_paths
        )
        card += f'<div class="section"><h4>Collected Files</h4><ul class="file-list">{items}</ul></div>'

    card += '''
      </div>
    </div>'''
    return card


def generate_html_report(result: ScenarioResult, output_path: Path) -> None:
    """Generate a self-contained HTML report with one card per step."""
    overall = "passed" if result.is_success else "failed"
    error_section = ""
    if result.error_message:
        error_section = f'<div class="failure-banner"><strong>Run error:</strong> {html.escape(result.error_message)}</div>'

    step_cards = [_build_step_card(r) for r in result.step_results]
    started = result.start_time.strftime("%Y-%m-%d %H:%M:%S")

    report_html = f'''<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>Regression Report &mdash; {html.escape(result.scenario_name)}</title>
<style>
  :root {{ --pass: #22c55e; --fail: #ef4444; --skip: #eab308; --error: #f97316; --bg: #f8fafc; --card: white; --border: #e2e8f0; --text: #1e293b; --muted: #64748b; }}
  * {{ margin: 0; padding: 0; box-sizing: border-box; }}
  body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background: var(--bg); color: var(--text); line-height: 1.6; padding: 1.5rem; }}
  .container {{ max-width: 1200px; margin: 0 auto; }}
  h1 {{ font-size: 1.8rem; margin-bottom: 0.3rem; }}
  .meta {{ color: var(--muted); margin-bottom: 1.5rem; font-size: 0.9rem; }}
  .summary {{ display: grid; grid-template-columns: repeat(auto-fit, minmax(130px, 1fr)); gap: 0.8rem; margin-bottom: 1.5rem; }}
  .stat {{ background: var(--card); border-radius: 8px; padding: 1rem; box-shadow: 0 1px 3px rgba(0,0,0,0.08); text-align: center; }}
  .stat .value {{ font-size: 1.8rem; font-weight: 700; }}
  .stat .label {{ font-size: 0.8rem; color: var(--muted); }}
  .stat.passed .value {{ color: var(--pass); }}
  .stat.failed .value {{ color: var(--fail); }}
  .stat.skipped .value {{ color: var(--skip); }}
  .stat.error .value {{ color: var(--error); }}
  .badge {{ display: inline-block; padding: 0.15rem 0.55rem; border-radius: 9999px; font-size: 0.7rem; font-weight: 600; text-transform: uppercase; white-space: nowrap; }}
  .badge.passed {{ background: #dcfce7; color: #166534; }}
  .badge.failed {{ background: #fecaca; color: #991b1b; }}
  .badge.skipped {{ background: #fef9c3; color: #854d0e; }}
  .badge.error, .badge.timeout {{ background: #fed7aa; color: #9a3412; }}
  .step-card {{ background: var(--card); border-radius: 8px; margin-bottom: 0.6rem; box-shadow: 0 1px 3px rgba(0,0,0,0.08); overflow: hidden; }}
  .step-header {{ display: flex; justify-content: space-between; align-items: center; padding: 0.7rem 1rem; cursor: pointer; user-select: none; }}
  .step-header:hover {{ background: #f8fafc; }}
  .step-header-left {{ display: flex; align-items: center; gap: 0.5rem; flex-wrap: wrap; }}
  .step-meta {{ font-size: 0.78rem; color: var(--muted); }}
  .expand-arrow {{ color: var(--muted); font-size: 0.7rem; transition: transform 0.2s; }}
  .step-card.expanded .expand-arrow {{ transform: rotate(180deg); }}
  .step-body {{ display: none; padding: 0 1rem 1rem 1rem; }}
  .step-card.expanded .step-body {{ display: block; }}
  .failure-banner {{ background: #fef2f2; border: 1px solid #fecaca; color: #991b1b; border-radius: 6px; padding: 0.6rem 0.8rem; margin-bottom: 0.8rem; font-size: 0.88rem; white-space: pre-wrap; }}
  .section {{ margin-bottom: 1rem; }}
  .section h4 {{ font-size: 0.85rem; color: var(--muted); text-transform: uppercase; letter-spacing: 0.05em; margin-bottom: 0.4rem; padding-bottom: 0.25rem; border-bottom: 1px solid var(--border); }}
  .console-log {{ background: #1e293b; color: #f1f5f9; padding: 0.8rem; border-radius: 6px; font-size: 0.78rem; overflow-x: auto; max-height: 300px; overflow-y: auto; white-space: pre-wrap; }}
  .screenshots-grid {{ display: grid; grid-template-columns: repeat(auto-fill, minmax(200px, 1fr)); gap: 0.6rem; }}
  .screenshot-item {{ text-align: center; }}
  .screenshot-item img {{ width: 100%; border-radius: 6px; border: 1px solid var(--border); cursor: pointer; }}
  .screenshot-item img.zoomed {{ position: fixed; top: 5%; left: 5%; width: 90%; height: 90%; object-fit: contain; z-index: 1000; background: rgba(0,0,0,0.85); border: none; border-radius: 8px; padding: 1rem; }}
  .screenshot-label {{ font-size: 0.75rem; color: var(--muted); margin-top: 0.2rem; }}
  .file-list {{ margin-left: 1.2rem; font-size: 0.85rem; }}
  .file-list code {{ background: #f1f5f9; padding: 0.1rem 0.3rem; border-radius: 3px; font-size: 0.8rem; }}
  .filter-bar {{ display: flex; gap: 0.5rem; margin-bottom: 1rem; flex-wrap: wrap; }}
  .filter-btn {{ padding: 0.3rem 0.8rem; border-radius: 6px; border: 1px solid var(--border); background: var(--card); cursor: pointer; font-size: 0.82rem; }}
</style>
</head>
<body>
<div class="container">
  <h1>{html.escape(result.scenario_name)} <span class="badge {overall}">{overall.upper()}</span></h1>
  <p class="meta">Started: {started} &middot; Duration: {format_duration(result.duration)}</p>

  <div class="summary">
    <div class="stat"><div class="value">{result.total_count}</div><div class="label">Total Steps</div></div>
    <div class="stat passed"><div class="value">{result.passed_count}</div><div class="label">Passed</div></div>
    <div class="stat failed"><div class="value">{result.failed_count}</div><div class="label">Failed</div></div>
    <div class="stat skipped"><div class="value">{result.skipped_count}</div><div class="label">Skipped</div></div>
    <div class="stat error"><div class="value">{result.error_count}</div><div class="label">Errors / Timeouts</div></div>
  </div>

  {error_section}

  <div class="filter-bar">
    <button class="filter-btn" onclick="filterSteps('all')">All</button>
    <button class="filter-btn" onclick="filterSteps('failed')">Failed</button>
    <button class="filter-btn" onclick="filterSteps('error')">Errors</button>
    <button class="filter-btn" onclick="filterSteps('passed')">Passed</button>
    <button class="filter-btn" onclick="expandAll()">Expand All</button>
  </div>

  <div id="step-list">
    {"".join(step_cards)}
  </div>
</div>

<script>
function filterSteps(status) {{
  document.querySelectorAll('.step-card').forEach(card => {{
    const s = card.dataset.status;
    const show = status === 'all' || s === status || (status === 'error' && s === 'timeout');
    card.style.display = show ? '' : 'none';
  }});
}}
function expandAll() {{
  document.querySelectorAll('.step-card').forEach(c => c.classList.add('expanded'));
}}
</script>
</body>
</html>'''

    with open(output_path, "w", encoding="utf-8") as f:
        f.write(report_html)
