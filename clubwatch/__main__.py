from __future__ import annotations
import argparse, logging, socket, sys
from datetime import datetime
from pathlib import Path
from typing import Optional
import psutil

RESET="\033[0m"; BOLD="\033[1m"; RED="\033[91m"; YELLOW="\033[93m"; GREEN="\033[92m"; CYAN="\033[96m"; GREY="\033[90m"

class ColourFormatter(logging.Formatter):
    _C = {logging.DEBUG: GREY, logging.INFO: CYAN, logging.WARNING: YELLOW, logging.ERROR: RED, logging.CRITICAL: RED+BOLD}
    def format(self, r):
        return (f"{GREY}{datetime.now().strftime('%Y-%m-%d %H:%M:%S')}{RESET} {self._C.get(r.levelno,'')}{r.levelname:<8}{RESET} "
                f"{GREY}{r.name}{RESET} {r.getMessage()}")

def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    ch = logging.StreamHandler(); ch.setFormatter(ColourFormatter()); root.addHandler(ch)
    if log_file:
        fh = logging.FileHandler(log_file); fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(name)s %(message)s")); root.addHandler(fh)

SAMPLE_CONFIG = """\
monitor:
  host_tag: ""
  log_level: INFO
  log_file: ""

metrics:
  enabled: true
  capacity: 1000
  basic_interval: 30
  performance_interval: 60
  operational_interval: 300
  system: true

alerting:
  enabled: true
  check_interval: 120
  default_rules: true
  rules:
    - id: slow-game-processing
      name: Slow Game Processing
      metric: club_game_processing_time
      operator: gt
      threshold: 2000
      severity: warning
      cooldown_minutes: 15
      consecutive_failures: 3
      time_window: 600
      channels: [log]

notifications:
  max_workers: 4
  retries: 2
  retry_backoff: 30
  history_size: 1000
  channels:
    log:
      type: log
      enabled: true
    console:
      type: console
      enabled: true
      colour: true
    webhook:
      type: webhook
      enabled: false
      url: "https://ops.example.org/hooks/clubwatch"
      timeout: 5
      headers:
        Authorization: "Bearer YOUR_TOKEN"
    slack:
      type: chat-webhook
      flavor: slack
      enabled: false
      url: "https://hooks.slack.com/services/YOUR/WEBHOOK/URL"
      channel: "#alerts"
    discord:
      type: chat-webhook
      flavor: discord
      enabled: false
      url: "https://discord.com/api/webhooks/YOUR/WEBHOOK"
    email:
      type: email
      enabled: false
      smtp_host: "smtp.example.org"
      smtp_port: 587
      use_tls: true
      username: ""
      password: ""
      sender: "alerts@example.org"
      to: ["ops@example.org"]

escalation:
  enabled: true
  interval: 60
  default_rules: true
  rules: []

cleanup:
  enabled: true
  interval_hours: 24
  retention_days: 30
  metric_retention_hours: 24
  notification_retention_hours: 24

benchmarks:
  default: true
  operations:
    get_club_table:
      baseline: 80
      threshold: 160
"""

def print_status():
    print(f"\n{BOLD}{CYAN}╔══════════════════════════════════╗{RESET}")
    print(f"{BOLD}{CYAN}║   ClubWatch · Host Snapshot      ║{RESET}")
    print(f"{BOLD}{CYAN}╚══════════════════════════════════╝{RESET}")
    print(f"  Host : {socket.gethostname()}")
    print(f"  Time : {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    cpu = psutil.cpu_percent(interval=1); mem = psutil.virtual_memory()
    bar = lambda p: GREEN if p < 70 else (YELLOW if p < 90 else RED)
    print(f"\n  {BOLD}System{RESET}")
    print(f"  CPU   {bar(cpu)}{cpu:5.1f}%{RESET}")
    print(f"  Mem   {bar(mem.percent)}{mem.percent:5.1f}%{RESET}  ({mem.used//1024**2}MB / {mem.total//1024**2}MB)")
    if hasattr(psutil, "getloadavg"):
        l1, l5, l15 = psutil.getloadavg(); print(f"  Load  {l1:.2f} / {l5:.2f} / {l15:.2f}")
    print()

def validate(cfg) -> bool:
    from clubwatch.config import build_benchmarks, build_channels, build_escalations, build_rules
    from clubwatch.models import ValidationError
    ok = True
    for label, build in [("rules", build_rules), ("channels", build_channels),
                         ("escalations", build_escalations), ("benchmarks", build_benchmarks)]:
        try:
            items = build(cfg); print(f"  ✓ {label}: {len(items)}")
        except ValidationError as e:
            ok = False; print(f"  {RED}✗ {label}: {e}{RESET}")
    return ok

def main(argv=None):
    parser = argparse.ArgumentParser(prog="clubwatch", description="ClubWatch · Club System Alerting & Escalation")
    parser.add_argument("--config",    "-c", metavar="PATH", help="Config file path")
    parser.add_argument("--init",            action="store_true", help="Write sample config and exit")
    parser.add_argument("--status",          action="store_true", help="Print host status and exit")
    parser.add_argument("--validate",        action="store_true", help="Validate config and exit")
    parser.add_argument("--test-channel",    metavar="ID",        help="Send a test notification via channel ID and exit")
    parser.add_argument("--log-level",       default=None,        help="DEBUG/INFO/WARNING/ERROR")
    parser.add_argument("--version", "-v",   action="store_true", help="Print version and exit")
    args = parser.parse_args(argv)

    if args.version:
        from clubwatch import __version__; print(f"clubwatch {__version__}"); return 0

    if args.init:
        target = Path(args.config or "clubwatch.yaml")
        if target.exists(): print(f"Config already exists: {target}")
        else: target.write_text(SAMPLE_CONFIG); print(f"{GREEN}Config written:{RESET} {target}")
        return 0

    if args.status:
        print_status(); return 0

    from clubwatch.config import load_config
    cfg     = load_config(args.config)
    mon_cfg = cfg.get("monitor", {})
    setup_logging(args.log_level or mon_cfg.get("log_level", "INFO"), mon_cfg.get("log_file") or None)

    if args.validate:
        print(f"Validating: {args.config or 'auto'}")
        if not validate(cfg): print(f"{RED}Config invalid{RESET}"); return 1
        print(f"{GREEN}Config OK{RESET}"); return 0

    from clubwatch.models import ValidationError
    from clubwatch.orchestrator import MonitoringOrchestrator
    try:
        orchestrator = MonitoringOrchestrator(cfg)
    except ValidationError as e:
        logging.getLogger("clubwatch").error(f"Invalid configuration: {e}"); return 1

    if args.test_channel:
        ok = orchestrator.dispatcher.test_channel(args.test_channel)
        orchestrator.dispatcher.shutdown()
        print(f"{GREEN}✓ {args.test_channel} ok{RESET}" if ok else f"{RED}✗ {args.test_channel} failed{RESET}")
        return 0 if ok else 1

    orchestrator.run()
    return 0

if __name__ == "__main__":
    sys.exit(main())
