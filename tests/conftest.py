"""
Test configuration and fake reasoning engines.
"""
import asyncio
from typing import Dict, List, Optional, Sequence

import pytest

from nexus_records.errors import NexusError
from nexus_records.schemas.engine_schema import EngineMessage, EngineResponse

SAMPLE_REPORT = """# 标准化病历报告
## 核心信息区
- 姓名：张*  性别：男  年龄：45
## 临床诊疗区
- 2023-03-12 门诊诊断：2型糖尿病
- **2023/05/01** 入院治疗，血糖控制不佳
- 2023年6月8日 复查血常规检查，白细胞 11.2
> 2023-07-20 出院小结
- 2024-01-01 生日快乐
## 量化数据区
| 指标 | 结果 |
"""


class ScriptedEngine:
    """
    Fake engine replaying queued answers. `responses` feed `process`;
    `streams` feed `stream` (a list of deltas, optionally ending with an
    exception instance to raise after them).
    """

    def __init__(
        self,
        responses: Optional[List[EngineResponse]] = None,
        streams: Optional[List[list]] = None,
    ):
        self.responses = list(responses or [])
        self.streams = list(streams or [])
        self.calls: List[Sequence[EngineMessage]] = []
        self.stream_calls: List[Sequence[EngineMessage]] = []

    async def process(self, messages):
        self.calls.append(messages)
        return self.responses.pop(0)

    async def stream(self, messages):
        self.stream_calls.append(messages)
        for item in self.streams.pop(0):
            if isinstance(item, NexusError):
                raise item
            await asyncio.sleep(0)
            yield item


class GatedEngine:
    """
    Fake engine whose calls block until the test releases them, so the
    completion order can differ from the call order.
    """

    def __init__(self):
        self.calls: List[Sequence[EngineMessage]] = []
        self._gates: Dict[int, asyncio.Future] = {}

    def _gate(self, index: int) -> asyncio.Future:
        if index not in self._gates:
            self._gates[index] = asyncio.get_running_loop().create_future()
        return self._gates[index]

    async def process(self, messages):
        index = len(self.calls)
        self.calls.append(messages)
        return await self._gate(index)

    async def stream(self, messages):
        index = len(self.calls)
        self.calls.append(messages)
        response = await self._gate(index)
        yield response.text

    def release(self, index: int, response: EngineResponse):
        self._gate(index).set_result(response)

    async def wait_for_calls(self, count: int):
        for _ in range(200):
            if len(self.calls) >= count:
                return
            await asyncio.sleep(0)
        raise AssertionError(f"expected {count} engine calls, saw {len(self.calls)}")


def ok(text: str) -> EngineResponse:
    return EngineResponse(success=True, text=text)


def failed(error: str = "boom", status_code: Optional[int] = 503) -> EngineResponse:
    return EngineResponse(success=False, error=error, error_type="transport", status_code=status_code)


@pytest.fixture
def sample_report():
    return SAMPLE_REPORT
