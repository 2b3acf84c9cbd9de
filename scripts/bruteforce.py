import argparse
import time

import requests


def attack(args):
    if args.wordlist:
        with open(args.wordlist, "r", encoding="utf-8") as f:
            passwords = [line.strip() for line in f if line.strip()]
    else:
        passwords = ["password", "123456", "letmein", "welcome", "Password1!", "Summer2024!"]

    session = requests.Session()
    total = 0
    start = time.time()
    queue = list(passwords)
    while queue:
        pwd = queue.pop(0)
        total += 1
        payload = {"username": args.username, "password": pwd}
        resp = session.post(f"{args.base}/login", json=payload, timeout=5)
        data = resp.json()
        result = data.get("result")
        print(f"[{total}] {pwd} -> {resp.status_code} {result}")

        if result == "success":
            duration = time.time() - start
            print(f"Success after {total} attempts in {duration:.2f}s")
            return

        if result in ("locked_out", "rate_limit_exceeded"):
            wait = data.get("retry_after_seconds")
            print(f"Blocked after {total} attempts: {data.get('message')} (retry after {wait}s)")
            if not args.wait or wait is None:
                return
            time.sleep(wait)
            queue.insert(0, pwd)

        if result == "unavailable":
            print("Service refused the attempt: attempt store unavailable")
            return
    print("No success")


def main():
    parser = argparse.ArgumentParser(description="Drive repeated logins against one account to exercise the lockout")
    parser.add_argument("username")
    parser.add_argument("--wordlist", help="path to wordlist")
    parser.add_argument("--base", default="http://127.0.0.1:8000", help="API base URL")
    parser.add_argument("--wait", action="store_true", help="sleep through lockouts instead of stopping")
    args = parser.parse_args()
    attack(args)


if __name__ == "__main__":
    main()
