import argparse

from dotenv import load_dotenv

from app.db import SessionLocal
from app.services.voucher_security import voucher_gate


def parse_args():
    parser = argparse.ArgumentParser(description="Inspect or clear voucher gate blocks.")
    sub = parser.add_subparsers(dest="command", required=True)
    report = sub.add_parser("report", help="Show recent suspicious activity.")
    report.add_argument("--hours", type=int, default=24)
    unblock = sub.add_parser("unblock", help="Lift a block on an IP address.")
    unblock.add_argument("ip_address")
    block = sub.add_parser("block", help="Block an IP address.")
    block.add_argument("ip_address")
    block.add_argument("--reason", default="Blocked by operator")
    block.add_argument("--minutes", type=int, default=None)
    block.add_argument("--permanent", action="store_true")
    return parser.parse_args()


def main():
    load_dotenv()
    args = parse_args()
    db = SessionLocal()
    try:
        if args.command == "report":
            activity = voucher_gate.suspicious_activity(db, hours=args.hours)
            for event in activity["events"]:
                print(
                    f"{event.created_at:%Y-%m-%d %H:%M:%S} {event.severity.value:<8} "
                    f"{event.event_type.value:<22} {event.ip_address or '-'} {event.voucher_code or '-'}"
                )
            for row in activity["top_failed_ips"]:
                print(f"failed lookups from {row['ip_address']}: {row['attempts']}")
            for flagged in activity["flagged_ips"]:
                until = "permanent" if flagged.is_permanent else flagged.blocked_until
                print(f"blocked {flagged.ip_address} until {until}: {flagged.reason}")
        elif args.command == "unblock":
            removed = voucher_gate.unblock_ip(db, args.ip_address)
            print("Unblocked." if removed else "IP was not blocked.")
        else:
            voucher_gate.flag_ip(
                db,
                args.ip_address,
                args.reason,
                block_minutes=args.minutes,
                permanent=args.permanent,
            )
            print("Blocked.")
    finally:
        db.close()


if __name__ == "__main__":
    main()
