"""
Run a local Diffie-Hellman exchange between two parties and check agreement.

Usage:
    python scripts/dh_exchange.py --group modp2048 --leak-report
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from ikedh.common.allocator import LeakDetective, set_allocator  # noqa: E402
from ikedh.common.config import ConfigError, get_settings  # noqa: E402
from ikedh.common.utils import print_banner, print_leak_report, sha256_hex  # noqa: E402
from ikedh.crypto.dh import AllocationFailure, DHError, RandomnessUnavailable, create  # noqa: E402
from ikedh.crypto.groups import UnsupportedGroup, parse_group, supported_groups  # noqa: E402


def run_exchange(group_id, allocator) -> bool:
    """Exchange public values between two objects; True when secrets agree."""
    with create(group_id, allocator=allocator) as alice, create(group_id, allocator=allocator) as bob:
        print(f"[*] Group: {alice.group_id.name} ({alice.modulus_length} bytes, g={alice.group.generator})")

        a_pub = alice.get_my_public_value()
        b_pub = bob.get_my_public_value()
        print(f"[+] Initiator public value: {sha256_hex(a_pub)[:16]}...")
        print(f"[+] Responder public value: {sha256_hex(b_pub)[:16]}...")

        alice.set_other_public_value(b_pub)
        bob.set_other_public_value(a_pub)

        a_secret = alice.get_shared_secret()
        b_secret = bob.get_shared_secret()

        if a_secret != b_secret:
            print("[-] Shared secrets differ")
            return False

        print(f"[+] Shared secret ({len(a_secret)} bytes): {sha256_hex(a_secret)[:16]}...")
        return True


def main() -> int:
    parser = argparse.ArgumentParser(description="IKE MODP Diffie-Hellman self-test")
    parser.add_argument("--group", help="group id or name, e.g. 14 or modp2048 (default: IKEDH_DEFAULT_GROUP)")
    parser.add_argument("--all", action="store_true", help="run every supported group")
    parser.add_argument("--leak-report", action="store_true", help="track allocations and report leaks")
    args = parser.parse_args()

    try:
        settings = get_settings()
        if args.all:
            groups = supported_groups()
        elif args.group:
            groups = [parse_group(args.group)]
        else:
            groups = [settings.default_group]
    except (ConfigError, UnsupportedGroup) as e:
        print(f"[-] {e}")
        return 1

    allocator = LeakDetective() if (args.leak_report or settings.leak_detective) else None
    if allocator is not None:
        set_allocator(allocator)

    print_banner("IKE Diffie-Hellman Exchange")

    ok = True
    for group_id in groups:
        try:
            ok = run_exchange(group_id, allocator) and ok
        except (DHError, RandomnessUnavailable, AllocationFailure) as e:
            print(f"[-] Exchange failed: {e}")
            ok = False

    if allocator is not None:
        leaked = print_leak_report(allocator.report_leaks())
        if leaked:
            print(f"[-] {leaked} allocation(s) still outstanding")
            ok = False
        else:
            print("[+] No leaks detected")

    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
