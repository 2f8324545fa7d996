# Copyright 2015, 2016 OpenMarket Ltd
# Copyright 2022 The Matrix.org Foundation C.I.C.
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

import logging
from typing import Callable, Dict, Iterable, Mapping, Sequence, Tuple, Union

import attr
from prometheus_client import Metric
from prometheus_client.core import REGISTRY, GaugeMetricFamily
from prometheus_client.registry import Collector

logger = logging.getLogger(__name__)

GaugeValue = Union[int, float]

# The gauges currently registered, by metric name.
all_gauges: Dict[str, "LaterGauge"] = {}


@attr.s(slots=True, hash=True, auto_attribs=True)
class LaterGauge(Collector):
    """A gauge which asks `caller` for its value each time it is scraped.

    With no `labels`, `caller` returns a number. Otherwise it returns a map
    from label value tuples to numbers.

    A gauge created under a name that is already in use takes the name over,
    so that the newest Notifier (say) is the one reported.
    """

    name: str
    desc: str
    labels: Sequence[str] = attr.ib(hash=False)
    caller: Callable[[], Union[GaugeValue, Mapping[Tuple[str, ...], GaugeValue]]]

    def __attrs_post_init__(self) -> None:
        previous = all_gauges.pop(self.name, None)
        if previous is not None:
            logger.debug("Replacing gauge %s", self.name)
            REGISTRY.unregister(previous)

        REGISTRY.register(self)
        all_gauges[self.name] = self

    def collect(self) -> Iterable[Metric]:
        gauge = GaugeMetricFamily(self.name, self.desc, labels=self.labels)

        try:
            values = self.caller()
        except Exception:
            logger.exception("Failed to compute gauge %s", self.name)
            yield gauge
            return

        if isinstance(values, (int, float)):
            gauge.add_metric([], values)
        else:
            for label_values, value in values.items():
                gauge.add_metric(label_values, value)

        yield gauge
