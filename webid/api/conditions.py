# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Status condition helpers

Conditions are keyed by type: setting a condition replaces the entry of the
same type in place or appends a new one, leaving every other entry (and the
order of the list) untouched.
"""

from datetime import datetime, timezone
from typing import List, Optional

from webid.api.models import Condition, ConditionStatus

# Condition types
AVAILABLE = "Available"
UP_TO_DATE = "UpToDate"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def find_condition(conditions: List[Condition], condition_type: str) -> Optional[Condition]:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def is_condition_true(conditions: List[Condition], condition_type: str) -> bool:
    condition = find_condition(conditions, condition_type)
    return condition is not None and condition.status == ConditionStatus.TRUE


def set_condition(
    conditions: List[Condition],
    condition_type: str,
    status: ConditionStatus,
    reason: str,
    message: str,
    observed_generation: Optional[int] = None,
) -> List[Condition]:
    """
    Upsert a condition by type and return the resulting list

    The transition time is only bumped when the status value changes, so a
    repeated "True" does not look like a fresh transition.
    """
    status = ConditionStatus(status)
    result = []
    replaced = False
    for condition in conditions:
        if condition.type != condition_type:
            result.append(condition)
            continue
        transition_time = condition.last_transition_time
        if condition.status != status or transition_time is None:
            transition_time = utc_timestamp()
        result.append(
            Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                last_transition_time=transition_time,
                observed_generation=observed_generation,
            )
        )
        replaced = True

    if not replaced:
        result.append(
            Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                last_transition_time=utc_timestamp(),
                observed_generation=observed_generation,
            )
        )
    return result
