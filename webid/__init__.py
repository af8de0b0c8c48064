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
webid-operator

Drives nginx "Site" deployments from declared Site and Page resources.

Key components:
- SiteReconciler: ensures the child resources of a Site match its spec
- PageReconciler: aggregates Page contents per Site and signals changes
- AggregateCache: shared store bridging the two reconcilers
"""

__version__ = "0.1.0"
