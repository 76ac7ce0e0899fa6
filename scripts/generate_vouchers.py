import argparse

from dotenv import load_dotenv

from app.db import RadiusSessionLocal, SessionLocal
from app.services.vouchers import MAX_BATCH_SIZE, vouchers


def parse_args():
    parser = argparse.ArgumentParser(description="Generate a batch of prepaid vouchers.")
    parser.add_argument("--plan-id", type=int, required=True)
    parser.add_argument("--count", type=int, default=10, help=f"1-{MAX_BATCH_SIZE}")
    parser.add_argument("--expires-days", type=int, default=None)
    parser.add_argument(
        "--activate-radius",
        action="store_true",
        help="Provision the RADIUS credentials now instead of at redemption.",
    )
    return parser.parse_args()


def main():
    load_dotenv()
    args = parse_args()
    db = SessionLocal()
    radius_db = RadiusSessionLocal()
    try:
        created = vouchers.generate_batch(
            db,
            radius_db,
            args.plan_id,
            args.count,
            expires_days=args.expires_days,
            activate_radius=args.activate_radius,
        )
        for voucher in created:
            print(voucher.code)
        print(f"{len(created)} voucher(s) generated.")
    finally:
        radius_db.close()
        db.close()


if __name__ == "__main__":
    main()
