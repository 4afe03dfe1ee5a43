"""
Health and metrics payloads for relay monitoring.

Served on the listener port by ``voice_relay.server``:
- GET /health - JSON health check
- GET /metrics - Prometheus-compatible text format metrics
"""

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from voice_relay.context import PipelineContext


def health_payload(ctx: "PipelineContext") -> dict:
    """Build the /health JSON document."""
    uptime = time.time() - ctx.started_at
    last_audio = ctx.voice.last_audio_at
    return {
        "status": "ok" if ctx.encoder.live else "degraded",
        "uptime_seconds": round(uptime, 2),
        "listeners": ctx.broadcaster.count,
        "current_speaker": ctx.current_speaker_name,
        "active_speakers": len(ctx.voice.sessions),
        "voice_state": ctx.voice.state.value,
        "encoder_state": ctx.encoder.state.value,
        "encoder_last_fault": ctx.encoder.last_fault,
        "restart_in_flight": ctx.restarts.in_flight,
        "restart_pending": ctx.restarts.pending,
        "seconds_since_audio": (
            round(time.monotonic() - last_audio, 2) if last_audio is not None else None
        ),
        "stats": ctx.stats.to_dict(),
    }


def metrics_text(ctx: "PipelineContext") -> str:
    """Build the /metrics Prometheus text body."""
    uptime = time.time() - ctx.started_at
    stats = ctx.stats

    # Format: metric_name{label="value"} value
    lines = [
        "# HELP voice_relay_uptime_seconds Relay uptime in seconds",
        "# TYPE voice_relay_uptime_seconds gauge",
        f"voice_relay_uptime_seconds {uptime:.2f}",
        "",
        "# HELP voice_relay_listeners Number of currently connected listeners",
        "# TYPE voice_relay_listeners gauge",
        f"voice_relay_listeners {ctx.broadcaster.count}",
        "",
        "# HELP voice_relay_active_speakers Number of live speaker sessions",
        "# TYPE voice_relay_active_speakers gauge",
        f"voice_relay_active_speakers {len(ctx.voice.sessions)}",
        "",
        "# HELP voice_relay_mixer_inputs Number of attached mixer inputs",
        "# TYPE voice_relay_mixer_inputs gauge",
        f"voice_relay_mixer_inputs {ctx.mixer.input_count}",
        "",
        "# HELP voice_relay_encoder_live Whether an encoder process is running",
        "# TYPE voice_relay_encoder_live gauge",
        f"voice_relay_encoder_live {1 if ctx.encoder.live else 0}",
        "",
        "# HELP voice_relay_chunks_forwarded_total Encoder chunks sent to listeners",
        "# TYPE voice_relay_chunks_forwarded_total counter",
        f"voice_relay_chunks_forwarded_total {stats.chunks_forwarded}",
        "",
        "# HELP voice_relay_bytes_forwarded_total Encoder bytes sent to listeners",
        "# TYPE voice_relay_bytes_forwarded_total counter",
        f"voice_relay_bytes_forwarded_total {stats.bytes_forwarded}",
        "",
        "# HELP voice_relay_encoder_spawns_total Encoder processes started",
        "# TYPE voice_relay_encoder_spawns_total counter",
        f"voice_relay_encoder_spawns_total {stats.encoder_spawns}",
        "",
        "# HELP voice_relay_sessions_started_total Speaker sessions started",
        "# TYPE voice_relay_sessions_started_total counter",
        f"voice_relay_sessions_started_total {stats.sessions_started}",
        "",
        "# HELP voice_relay_decode_errors_total Voice packets that failed to decode",
        "# TYPE voice_relay_decode_errors_total counter",
        f"voice_relay_decode_errors_total {stats.decode_errors}",
        "",
        "# HELP voice_relay_restarts_total Full pipeline restarts",
        "# TYPE voice_relay_restarts_total counter",
        f"voice_relay_restarts_total {stats.restarts}",
        "",
        "# HELP voice_relay_listeners_total Listener connections since start",
        "# TYPE voice_relay_listeners_total counter",
        f"voice_relay_listeners_total {stats.listeners_total}",
        "",
        "# HELP voice_relay_encoder_state Current encoder state",
        "# TYPE voice_relay_encoder_state gauge",
        f'voice_relay_encoder_state{{state="{ctx.encoder.state.value}"}} 1',
        "",
    ]
    return "\n".join(lines)
