"""
Command-line interface for autoaccept - auto-accept agent prompts in CDP-debuggable IDEs.
"""
import argparse
import asyncio
import logging
from pathlib import Path

from .config import Settings
from .discovery import TargetScanner, DEFAULT_PORT_RANGE, PREFERRED_PORT
from .eventlog import EventLog
from .manager import ConnectionManager
from .orchestrator import Orchestrator
from .store import JsonFileStore

DEFAULT_STATE_FILE = Path.home() / ".autoaccept" / "state.json"

HELP = """
Commands:
  on                - Enable auto-accept.
  off               - Disable auto-accept and report the session.
  background        - Toggle background (multi-conversation) mode.
  interval <ms>     - Set the poll interval for simple mode.
  ban <pattern>     - Add a banned command pattern (/regex/flags or literal).
  unban <pattern>   - Remove a banned command pattern.
  bans              - List banned command patterns.
  stats             - Show live click counters.
  roi               - Show this week's totals.
  targets           - List discovered targets.
  away / back       - Mark the window as unfocused / focused.
  quit              - Exit."""


def parse_port_range(value: str):
    try:
        start, end = (int(p) for p in value.split('-', 1))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected START-END, got {value!r}")
    if start > end:
        raise argparse.ArgumentTypeError(f"empty port range {value!r}")
    return start, end


async def interactive_loop(orchestrator: Orchestrator):
    print(HELP)
    while True:
        command_str = await asyncio.to_thread(input, "\n> ")
        parts = command_str.strip().split(maxsplit=1)
        if not parts:
            continue
        command, arg = parts[0].lower(), (parts[1] if len(parts) > 1 else None)

        if command == "on":
            await orchestrator.enable()
            print(f"Auto Accept is ON ({orchestrator.mode}).")
        elif command == "off":
            await orchestrator.disable()
            print("Auto Accept is OFF.")
        elif command == "background":
            enabled = not orchestrator.settings.background
            await orchestrator.set_background_mode(enabled)
            print(f"Background mode {'enabled' if enabled else 'disabled'}.")
        elif command == "interval":
            if not arg or not arg.isdigit() or int(arg) <= 0:
                print("Usage: interval <ms>")
            else:
                await orchestrator.set_poll_frequency(int(arg))
                print(f"Poll interval set to {arg}ms.")
        elif command == "ban":
            if not arg:
                print("Usage: ban <pattern>")
            else:
                patterns = orchestrator.settings.banned_commands
                if arg not in patterns:
                    await orchestrator.set_banned_commands(patterns + [arg])
                print(f"Banned: {arg}")
        elif command == "unban":
            patterns = orchestrator.settings.banned_commands
            if not arg or arg not in patterns:
                print("Usage: unban <pattern> (see 'bans')")
            else:
                await orchestrator.set_banned_commands([p for p in patterns if p != arg])
                print(f"Unbanned: {arg}")
        elif command == "bans":
            for pattern in orchestrator.settings.banned_commands:
                print(f"  {pattern}")
        elif command == "stats":
            stats = orchestrator.manager.get_stats()
            print(f"Clicks: {stats['clicks']} (files {stats['fileEdits']}, commands {stats['terminalCommands']}), "
                  f"blocked: {stats['blocked']}, while away: {stats['actionsWhileAway']}")
        elif command == "roi":
            report = orchestrator.roi.report()
            print(f"This week: {report['clicksThisWeek']} clicks, {report['blockedThisWeek']} blocked, "
                  f"{report['sessionsThisWeek']} sessions, ~{report['timeSavedFormatted']} saved")
        elif command == "targets":
            if not orchestrator.last_targets:
                print("No targets discovered yet.")
            for target in orchestrator.last_targets:
                marker = '*' if target.id in orchestrator.manager.connections else ' '
                print(f" {marker} [{target.kind}] :{target.port} {target.title[:60] or target.url[:60]}")
        elif command == "away":
            await orchestrator.set_focus_state(False)
            print("Marked as away.")
        elif command == "back":
            await orchestrator.set_focus_state(True)
            print("Welcome back.")
        elif command == "quit":
            break
        else:
            print("Unknown command.")


def main():
    parser = argparse.ArgumentParser(
        description='Automatically accept agent prompts in IDEs exposing a CDP debugging port.',
        prog='autoaccept'
    )

    parser.add_argument('--ide', default='cursor',
                        help='IDE flavor: cursor or antigravity (default: cursor).')
    parser.add_argument('--host', default='127.0.0.1', help='Host running the IDE.')
    parser.add_argument('--ports', type=parse_port_range, default=DEFAULT_PORT_RANGE,
                        help='Port range to scan, e.g. 9000-9030.')
    parser.add_argument('--preferred-port', type=int, default=PREFERRED_PORT,
                        help='Port probed first (default: 9222).')
    parser.add_argument('--state-file', type=Path, default=DEFAULT_STATE_FILE,
                        help='Shared JSON state file (settings, weekly stats, instance lock).')
    parser.add_argument('--log-prefix', default=None,
                        help='Event log prefix; a trailing / means a directory.')
    parser.add_argument('--background', action='store_true', default=None,
                        help='Enable background (multi-conversation) mode.')
    parser.add_argument('--interval', type=int, default=None, help='Poll interval in ms.')
    parser.add_argument('--ban', action='append', default=[], help='Extra banned command pattern (repeatable).')
    parser.add_argument('--shortcut', action='store_true',
                        help='Also send the Alt+G accept shortcut on each tick.')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging.')
    parser.add_argument('--no-console', action='store_true',
                        help='Start enabled and run without the interactive console.')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    store = JsonFileStore(args.state_file)
    settings = Settings.load(store)
    if args.background is not None:
        settings.background = True
    if args.interval:
        settings.poll_frequency_ms = args.interval
    settings.banned_commands += [p for p in args.ban if p not in settings.banned_commands]
    if args.no_console:
        settings.enabled = True
    settings.save(store)

    async def run():
        event_log = EventLog(prefix=args.log_prefix)
        event_log.start(ide=args.ide, ports=list(args.ports), background=settings.background)
        orchestrator = Orchestrator(
            store,
            ide=args.ide,
            scanner=TargetScanner(args.host, port_range=args.ports, preferred_port=args.preferred_port),
            manager=ConnectionManager(event_sink=event_log),
            event_sink=event_log,
            shortcut=args.shortcut,
        )
        print(f"Scanning {args.host} ports {args.preferred_port}, {args.ports[0]}-{args.ports[1]} for {args.ide}...")
        print(f"Event log: {event_log.path}")
        await orchestrator.start()
        try:
            if args.no_console:
                await asyncio.Event().wait()
            else:
                await interactive_loop(orchestrator)
        finally:
            print("Disconnecting...")
            await orchestrator.shutdown()
            await event_log.close()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        print("\n[autoaccept] User interrupted the process. Exiting.")
    except Exception as e:
        print(f"\n[autoaccept] A critical error occurred: {e}")


if __name__ == "__main__":
    main()
