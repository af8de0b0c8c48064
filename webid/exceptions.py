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


class WebIDException(Exception):
    """Base class for all operator errors"""


class ConfigurationException(WebIDException):
    """Raised when the operator configuration is missing or invalid"""


class ResourceNotFoundException(WebIDException):
    """Raised by a cluster client when the requested object does not exist"""

    def __init__(self, kind: str, namespace: str, name: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} {namespace}/{name} not found")


class ResourceConflictException(WebIDException):
    """Raised when a write is rejected because the object changed since it was read"""

    def __init__(self, kind: str, namespace: str, name: str, detail: str = ""):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        message = f"{kind} {namespace}/{name} was modified concurrently"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class CorruptResourceException(WebIDException):
    """Raised when a child resource has an unexpected structure and had to be removed"""
