#!/usr/bin/env python3
"""
Address Mapper - derives Matrix identifiers from third-party identifiers and back

Ghost users:  @{service_prefix}_{third_party_user_id}:{homeserver_domain}
Room aliases: #{service_prefix}_{third_party_room_id}:{homeserver_domain}

The status room uses the status room postfix in place of a third-party room ID.
Only identifiers on our own homeserver map back. The recovery functions never
raise: room alias lists are mutable state owned by the homeserver, so anything
unparsable simply maps to None.
"""
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Pattern


@dataclass(frozen=True)
class AddressMapper:
    """Pure mapping between third-party IDs and Matrix user IDs / room aliases"""
    service_prefix: str
    homeserver_domain: str
    status_room_postfix: str = "puppetStatusRoom"
    _ghost_pattern: Pattern = field(init=False, repr=False, compare=False)
    _alias_pattern: Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        prefix = re.escape(self.service_prefix)
        object.__setattr__(self, "_ghost_pattern", re.compile(rf"^@{prefix}_(.+)$", re.DOTALL))
        object.__setattr__(self, "_alias_pattern", re.compile(rf"^#{prefix}_(.+)$", re.DOTALL))

    @staticmethod
    def _require(value: str, what: str) -> str:
        if not value:
            raise ValueError(f"{what} must be a non-empty string")
        return value

    def _strip_domain(self, identifier: str) -> Optional[str]:
        suffix = f":{self.homeserver_domain}"
        if identifier.endswith(suffix):
            return identifier[:-len(suffix)]
        # Identifiers from other homeservers are never ours
        return None

    def ghost_user_id(self, third_party_user_id: str) -> str:
        self._require(third_party_user_id, "third-party user ID")
        return f"@{self.service_prefix}_{third_party_user_id}:{self.homeserver_domain}"

    def room_alias_localpart(self, third_party_room_id: str) -> str:
        self._require(third_party_room_id, "third-party room ID")
        return f"{self.service_prefix}_{third_party_room_id}"

    def room_alias(self, third_party_room_id: str) -> str:
        return f"#{self.room_alias_localpart(third_party_room_id)}:{self.homeserver_domain}"

    def alias_from_localpart(self, localpart: str) -> str:
        self._require(localpart, "room alias localpart")
        return f"#{localpart}:{self.homeserver_domain}"

    def status_room_alias_localpart(self) -> str:
        return self.room_alias_localpart(self.status_room_postfix)

    def status_room_alias(self) -> str:
        return self.room_alias(self.status_room_postfix)

    def third_party_user_id_from_ghost(self, matrix_user_id: Optional[str]) -> Optional[str]:
        if not matrix_user_id:
            return None
        localpart = self._strip_domain(matrix_user_id)
        match = self._ghost_pattern.match(localpart) if localpart else None
        return match.group(1) if match else None

    def third_party_room_id_from_alias(self, alias: Optional[str]) -> Optional[str]:
        if not alias or not isinstance(alias, str):
            return None
        localpart = self._strip_domain(alias)
        match = self._alias_pattern.match(localpart) if localpart else None
        return match.group(1) if match else None

    def third_party_room_id_from_aliases(self, aliases: Optional[Iterable[str]]) -> Optional[str]:
        """Scan a room's aliases; the last alias matching our namespace wins"""
        result = None
        for alias in aliases or ():
            recovered = self.third_party_room_id_from_alias(alias)
            if recovered is not None:
                result = recovered
        return result

    def is_ghost(self, matrix_user_id: Optional[str]) -> bool:
        return self.third_party_user_id_from_ghost(matrix_user_id) is not None

    def is_status_room_id(self, third_party_room_id: Optional[str]) -> bool:
        return third_party_room_id == self.status_room_postfix
