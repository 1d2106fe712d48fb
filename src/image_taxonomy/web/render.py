"""HTML rendering for work item pages and status fragments."""

from __future__ import annotations

import html
import json
from collections.abc import Mapping

from image_taxonomy.items.models import WorkItemStatus, WorkItemView
from image_taxonomy.items.state_machine import is_terminal
from image_taxonomy.web.contracts import STREAM_MEDIA_TYPE, TERMINAL_MARKER

STATUS_LABELS = {
    WorkItemStatus.PENDING: "Queued for analysis",
    WorkItemStatus.PROCESSING: "Analyzing image",
    WorkItemStatus.COMPLETE: "Analysis complete",
    WorkItemStatus.FAILED: "Analysis failed",
}

# Same rendering as "-" in a browser, but never matches the marker token.
_MARKER_SAFE = TERMINAL_MARKER.replace("-", "&#45;")

FORM_FIELDS = (("title", "Title"), ("description", "Description"), ("taxonomy", "Taxonomy"))

# Browser side of the poller, configured by the data-poll-* attributes.
_POLL_SCRIPT = """<script>
(function () {
  document.querySelectorAll('[data-controller="poll"]').forEach(function (section) {
    var url = section.dataset.pollUrlValue;
    var accept = section.dataset.pollAcceptValue;
    var marker = section.dataset.pollMarkerValue;
    var timer = setInterval(tick, Number(section.dataset.pollIntervalValue));

    function stop() {
      clearInterval(timer);
    }

    function render(body) {
      var holder = document.createElement("template");
      holder.innerHTML = body;
      holder.content.querySelectorAll("turbo-stream").forEach(function (stream) {
        var target = document.getElementById(stream.getAttribute("target"));
        var template = stream.querySelector("template");
        if (target && template) {
          target.replaceWith(template.content.cloneNode(true));
        }
      });
    }

    function tick() {
      fetch(url, {headers: {"Accept": accept}})
        .then(function (response) {
          if (response.status === 404) {
            stop();
            return null;
          }
          return response.ok ? response.text() : null;
        })
        .then(function (body) {
          if (body === null) {
            return;
          }
          render(body);
          if (body.indexOf(marker) !== -1) {
            stop();
          }
        })
        .catch(function (error) {
          console.warn("Status poll failed", error);
        });
    }

    window.addEventListener("pagehide", stop);
  });
})();
</script>"""


def fragment_target(work_item_id: int) -> str:
    return f"work_item_{work_item_id}"


def render_status_fragment(item: WorkItemView) -> str:
    """Status block for one item; carries the terminal marker only when terminal."""

    terminal = is_terminal(item.status)
    parts = [
        f'<div id="{fragment_target(item.id)}" class="work-item status-{item.status.value}" '
        f'data-status="{item.status.value}">',
        f'<p class="status">{_text(STATUS_LABELS[item.status])}</p>',
    ]
    if terminal:
        parts.extend(_render_result(item))
        parts.append(f'<span class="{TERMINAL_MARKER}" hidden></span>')
    parts.append("</div>")
    return "\n".join(parts)


def render_stream_message(item: WorkItemView) -> str:
    """Partial-update message replacing the item's status block in place."""

    return (
        f'<turbo-stream action="replace" target="{fragment_target(item.id)}">'
        f"<template>{render_status_fragment(item)}</template>"
        "</turbo-stream>"
    )


def render_item_page(
    item: WorkItemView,
    *,
    poll_interval_ms: int,
    notice: str | None = None,
) -> str:
    """Full page for one item, bootstrapping the client poller."""

    title = item.title or f"Work item {item.id}"
    body = [f"<h1>{_text(title)}</h1>"]
    if notice:
        body.append(f'<p class="notice">{_text(notice)}</p>')
    body.append(
        f'<section data-controller="poll" '
        f'data-poll-url-value="/items/{item.id}" '
        f'data-poll-accept-value="{STREAM_MEDIA_TYPE}" '
        f'data-poll-marker-value="{_MARKER_SAFE}" '
        f'data-poll-interval-value="{poll_interval_ms}">',
    )
    body.append(render_status_fragment(item))
    body.append("</section>")
    body.append(_POLL_SCRIPT)
    body.append('<p><a href="/items">All items</a></p>')
    return _page(title, "\n".join(body))


def render_index_page(items: list[WorkItemView]) -> str:
    rows = [
        f'<li><a href="/items/{item.id}">{_text(item.title or f"Work item {item.id}")}</a> '
        f'<span class="status">{item.status.value}</span></li>'
        for item in items
    ]
    body = [
        "<h1>Work items</h1>",
        '<p><a href="/items/new">Upload an image</a></p>',
        "<ul>" + "".join(rows) + "</ul>" if rows else "<p>No items yet.</p>",
    ]
    return _page("Work items", "\n".join(body))


def render_form_page(
    *,
    errors: Mapping[str, str] | None = None,
    values: Mapping[str, str | None] | None = None,
) -> str:
    """Upload form, optionally with inline field errors and sticky values."""

    errors = errors or {}
    values = values or {}
    fields = []
    for name, label in FORM_FIELDS:
        value = _text(values.get(name) or "")
        if name == "description":
            control = f'<textarea name="{name}" id="{name}">{value}</textarea>'
        else:
            control = f'<input type="text" name="{name}" id="{name}" value="{value}">'
        fields.append(f'<label for="{name}">{label}</label>{control}{_field_error(errors, name)}')
    fields.append(
        '<label for="image">Image</label>'
        '<input type="file" name="image" id="image" accept="image/*">'
        f"{_field_error(errors, 'image')}",
    )
    general = [
        f'<p class="error">{_text(message)}</p>'
        for name, message in errors.items()
        if name not in {"title", "description", "taxonomy", "image"}
    ]
    body = (
        "<h1>Upload an image</h1>"
        + "".join(general)
        + '<form action="/items" method="post" enctype="multipart/form-data">'
        + "".join(f"<div>{field}</div>" for field in fields)
        + '<button type="submit">Upload</button></form>'
    )
    return _page("Upload an image", body)


def render_message_page(title: str, message: str, *, link: str | None = None) -> str:
    body = f"<h1>{_text(title)}</h1><p>{_text(message)}</p>"
    if link:
        body += f'<p><a href="{_text(link)}">Continue</a></p>'
    return _page(title, body)


def _render_result(item: WorkItemView) -> list[str]:
    parts: list[str] = []
    if item.error_message:
        parts.append(f'<p class="error">{_text(item.error_message)}</p>')
    if item.taxonomy:
        parts.append(f'<p class="taxonomy">{_text(item.taxonomy)}</p>')
    if item.description:
        parts.append(f'<p class="description">{_text(item.description)}</p>')
    if item.violations:
        rows = "".join(
            f"<tr><th>{_text(str(key))}</th><td>{_text(_format_value(value))}</td></tr>"
            for key, value in sorted(item.violations.items())
        )
        parts.append(f'<table class="violations">{rows}</table>')
    else:
        parts.append('<p class="violations-empty">No violations reported.</p>')
    return parts


def _format_value(value: object) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _field_error(errors: Mapping[str, str], name: str) -> str:
    message = errors.get(name)
    if not message:
        return ""
    return f'<span class="field-error" data-field="{name}">{_text(message)}</span>'


def _text(value: str) -> str:
    return html.escape(value, quote=True).replace(TERMINAL_MARKER, _MARKER_SAFE)


def _page(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html>\n"
        f"<html><head><meta charset=\"utf-8\"><title>{_text(title)}</title></head>\n"
        f"<body>\n{body}\n</body></html>\n"
    )
