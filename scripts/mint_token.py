# scripts/mint_token.py
import argparse  # parse CLI args
import uuid  # default ticket id

from ticket_engine.config import get_settings  # signing secret from env / .env
from ticket_engine.security import mint_qr_token  # same signer the issuer uses


def main() -> None:  # main entrypoint
    parser = argparse.ArgumentParser(description="Mint a gate QR token for manual testing")  # CLI parser
    parser.add_argument("--ticket-id", default=None)  # ticket id to embed (random when omitted)
    parser.add_argument("--event-id", required=True)  # event id to embed
    parser.add_argument("--tier-id", required=True)  # tier id to embed
    parser.add_argument("--user-id", required=True)  # owner id to embed
    args = parser.parse_args()  # parse args

    ticket_id = args.ticket_id or str(uuid.uuid4())  # a token for an unknown ticket scans as NOT_FOUND
    token = mint_qr_token(ticket_id, args.event_id, args.tier_id, args.user_id, get_settings().TICKET_SIGNING_SECRET)  # sign
    print(token)  # output token to stdout


if __name__ == "__main__":  # run as script
    main()  # call main
