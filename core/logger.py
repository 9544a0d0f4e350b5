"""
Structured Uplink Event Log

Writes JSON Lines for post-session analysis of connection drops and
failed sends. Each line is a complete JSON object:

    {"t": 1718000000.12, "client": "wearOS", "event": "SEND", "data": {...}}
"""
import json
import logging
import os
import time
from collections import Counter
from typing import Any, Dict, List, Optional

from .bus import MessageBus, TOPIC_CONNECTION, TOPIC_SEND

log = logging.getLogger(__name__)


class UplinkEventLog:
    """
    Minimal structured logger for uplink events.

    Line buffered so a killed process never leaves a half-written entry
    behind. Write failures are reported through the module logger and
    never raised into the uplink.
    """

    def __init__(self, client_id: str, log_file: str = "logs/uplink.jsonl"):
        self.client_id = client_id
        self.log_file = log_file

        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        self.file = open(log_file, 'a', buffering=1)
        log.info(f"[EventLog] Logging to {log_file}")

    def log(self, event: str, data: Optional[Dict[str, Any]] = None):
        """
        Log structured event.

        Args:
            event: Event type, e.g. "CONNECTION", "SEND".
            data: Event payload (JSON serializable dict).
        """
        entry = {
            't': time.time(),
            'client': self.client_id,
            'event': event,
            'data': data or {}
        }

        try:
            self.file.write(json.dumps(entry, default=str) + '\n')
            self.file.flush()
        except Exception as e:
            log.error(f"[EventLog] Failed to write entry {entry}: {e}")

    async def on_connection_event(self, data: Dict[str, Any]):
        self.log("CONNECTION", data)

    async def on_send_event(self, data: Dict[str, Any]):
        self.log("SEND", data)

    def attach(self, bus: MessageBus):
        """Subscribe to the uplink topics on the given bus."""
        bus.subscribe(TOPIC_CONNECTION, self.on_connection_event)
        bus.subscribe(TOPIC_SEND, self.on_send_event)

    def close(self):
        if self.file and not self.file.closed:
            self.file.close()
            log.info(f"[EventLog] Closed {self.log_file}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def read_events(log_file: str) -> List[Dict[str, Any]]:
    """Load a JSONL event log, skipping lines that do not parse."""
    events = []
    with open(log_file, 'r') as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                log.warning(f"[EventLog] Skipping malformed line {lineno} in {log_file}")
    return events


def analyze_log(log_file: str) -> Dict[str, Any]:
    """
    Quick analysis tool for post-session review.

    Usage:
        from core.logger import analyze_log
        analyze_log('logs/uplink.jsonl')
    """
    events = read_events(log_file)

    event_types = Counter(e.get('event') for e in events)
    sends = [e for e in events if e.get('event') == 'SEND']
    failed = [e for e in sends if not e.get('data', {}).get('ok', False)]
    by_type = Counter(e.get('data', {}).get('type') for e in sends)
    transitions = [e for e in events if e.get('event') == 'CONNECTION']

    duration = events[-1]['t'] - events[0]['t'] if events else 0.0

    summary = {
        'events': len(events),
        'event_types': dict(event_types),
        'duration_s': duration,
        'sends': len(sends),
        'send_failures': len(failed),
        'sends_by_type': dict(by_type),
        'connection_transitions': len(transitions),
    }

    print(f"\n{'='*60}")
    print(f"Log Analysis: {log_file}")
    print(f"{'='*60}\n")

    print("Event Summary:")
    for event, count in sorted(event_types.items(), key=lambda x: -x[1]):
        print(f"  {str(event):30s} {count:5d}")

    print(f"\nSession Duration: {duration:.1f}s ({duration/60:.1f} min)")

    if transitions:
        start_time = events[0]['t']
        print("\nConnection Transitions:")
        for e in transitions:
            data = e.get('data', {})
            t_rel = e['t'] - start_time
            print(f"  T+{t_rel:6.1f}s  {data.get('from')} -> {data.get('to')}  (retries: {data.get('retry_count')})")

    print(f"\nSends: {len(sends)}  Failed: {len(failed)}")
    for msg_type, count in by_type.items():
        print(f"  {str(msg_type):20s} {count:5d}")

    print(f"\n{'='*60}\n")

    return summary
