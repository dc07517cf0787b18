#!/usr/bin/env python3

"""CLI tool to list serial ports, detect baud rates, and watch traffic"""

import argparse
import logging
import ok_logging_setup
import serialmon
import time

ok_logging_setup.skip_traceback_for(serialmon.SerialException)


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    subparsers = parser.add_subparsers(title="actions", dest="command")
    list_parser = subparsers.add_parser("list", help="List known serial ports")
    list_parser.add_argument(
        "--verbose", "-v", action="store_true", help="print all properties"
    )

    probe_parser = subparsers.add_parser("probe", help="Detect baud rate")
    probe_parser.add_argument("port", help="device path")

    mon_parser = subparsers.add_parser("monitor", help="Watch incoming data")
    mon_parser.add_argument("port", nargs="*", help="device paths (or all)")
    baud_group = mon_parser.add_mutually_exclusive_group()
    baud_group.add_argument("--baud", "-b", type=int, default=115200)
    baud_group.add_argument(
        "--auto", "-a", action="store_true", help="detect baud rate first"
    )
    mon_parser.add_argument(
        "--seconds", "-s", type=float, default=0.0, help="stop after (0=never)"
    )

    args = parser.parse_args()
    if not args.command:
        args = parser.parse_args(["list"])

    ok_logging_setup.install({"OK_LOGGING_LEVEL": "info"})

    if args.command == "list":
        list_ports(verbose=args.verbose)
    elif args.command == "probe":
        probe_port(args.port)
    elif args.command == "monitor":
        monitor_ports(
            args.port, baud=args.baud, auto=args.auto, secs=args.seconds
        )


def list_ports(verbose: bool):
    found = serialmon.scan_serial_ports()
    if not found:
        ok_logging_setup.exit("❌ No serial ports found")

    num = len(found)
    logging.info("🔌 %d serial port%s found", num, "" if num == 1 else "s")
    for port in found:
        if verbose:
            print(f"Serial port: {port.name}")
            print("".join(f"  {k}={v!r}\n" for k, v in port.attr.items()))
        else:
            print(format_port(port))


def probe_port(name: str):
    with serialmon.ConnectionRegistry() as registry:
        port = registry.request_port(name)
        logging.info("🔎 Probing %s...", port.label)
        result = registry.detect_baud(port)

    if not result.found:
        ok_logging_setup.exit(f"🚫 No plausible baud rate on {name}")
    print(f"{port.name} {result.baud} {result.preview()!r}")


def monitor_ports(names: list[str], baud: int, auto: bool, secs: float):
    with serialmon.ConnectionRegistry() as registry:
        if not names:
            if auto:
                ok_logging_setup.exit("--auto needs explicit ports")
            result = registry.connect_all(baud)
            for exc in result.failed.values():
                logging.warning("⚠️ %s", exc)
        else:
            for name in names:
                port = registry.request_port(name)
                try:
                    if auto:
                        registry.detect_and_connect(port)
                    else:
                        registry.connect(port, baud)
                except serialmon.SerialException as exc:
                    logging.warning("⚠️ %s", exc)

        if not registry.get_active_connections():
            ok_logging_setup.exit("❌ No serial ports connected")

        deadline = time.monotonic() + secs if secs > 0 else None
        try:
            while deadline is None or time.monotonic() < deadline:
                time.sleep(1.0)
                rate = registry.tick_rate()
                stats = registry.get_stats()
                sizes = " ".join(
                    f"{p.name}={len(registry.get_buffer_snapshot(p))}"
                    for p in registry.get_active_connections()
                )
                print(
                    f"{serialmon.format_bytes(rate)}/s "
                    f"active={stats.active_count} "
                    f"errors={stats.error_count} ({stats.error_rate:.1%}) "
                    f"{sizes}"
                )
                if not stats.active_count:
                    break
        except KeyboardInterrupt:
            logging.info("✋ Interrupted")


def format_port(port: serialmon.SerialPort) -> str:
    words = [port.name]
    if port.vid is not None and port.pid is not None:
        words.append(f"{port.vid:04x}:{port.pid:04x}")
    if port.serial_number:
        words.append(port.serial_number)
    if port.label != port.name:
        words.append(repr(port.label))
    return " ".join(words)


if __name__ == "__main__":
    main()
