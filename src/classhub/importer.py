"""Parser for bulk account import files.

One account per line as ``username, password, display_name``. A first row
containing the token ``username`` is treated as a header. A missing password
defaults to the username and rows without a username are dropped.
"""

from typing import List

from .provisioning import AccountRequest


def parse_records(text: str) -> List[AccountRequest]:
    lines = [line for line in text.splitlines() if line.strip()]
    if lines and "username" in lines[0].lower():
        lines = lines[1:]

    records: List[AccountRequest] = []
    for line in lines:
        fields = [value.strip() for value in line.split(",")]
        fields += [""] * (3 - len(fields))
        username, password, display_name = fields[:3]
        if not username:
            continue
        records.append(
            AccountRequest(
                username=username,
                password=password or username,
                display_name=display_name or None,
            )
        )
    return records
