import json
from pathlib import Path
import sys


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from loginguard import db
from loginguard.config import load_config
from loginguard.policy import validate_password

demo_pwds = [
    "Summer2024!",
    "Winter2023#",
    "BlueSky99!",
    "N2v!e4Gh1@xQz9Lm",
    "Vc8@Lp3#xZq1!sHr",
    "Zl5*Yh8!cV2@wQe7",
]

hash_modes_cycle = ["argon2id", "bcrypt"]


def main():
    cfg = load_config("config.json")
    db.init_db(cfg.db_url)

    users_out = []
    for i, pwd in enumerate(demo_pwds, start=1):
        policy = validate_password(pwd)
        if not policy.valid:
            raise RuntimeError(f"demo password {pwd!r} breaks the policy: {policy.message}")

        username = f"user{i:02d}@example.com"
        hash_mode = hash_modes_cycle[(i - 1) % len(hash_modes_cycle)]
        if db.get_user(username) is None:
            db.create_user(username, pwd, cfg.pepper, hash_mode)
        users_out.append({"username": username, "password": pwd, "hash_mode": hash_mode})

    Path("data").mkdir(exist_ok=True)
    with open("data/users.json", "w", encoding="utf-8") as f:
        json.dump(users_out, f, indent=2)
    print("Seeded", len(users_out), "users -> data/users.json and", cfg.db_url)


if __name__ == "__main__":
    main()
