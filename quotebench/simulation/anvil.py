"""
AnvilProcess - 本地 Anvil 分叉节点启动器

在没有外部节点时，由服务在启动时拉起一个本地分叉节点。
参数与 start-fork 脚本保持一致：长请求超时、30M gas 上限、放宽合约大小、
每秒出块、关闭限流。
"""

import logging
import socket
import subprocess
import time
from typing import List, Optional

import httpx

from .models import AnvilProcessInfo

logger = logging.getLogger(__name__)


def find_free_port(start_port: int = 8545, max_attempts: int = 100) -> int:
    """查找可用端口"""
    for port in range(start_port, start_port + max_attempts):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            if s.connect_ex(("127.0.0.1", port)) != 0:
                return port
    raise OSError(f"无法在 {start_port}-{start_port + max_attempts} 范围内找到可用端口")


class AnvilProcess:
    """
    Anvil 进程管理

    Example:
        with AnvilProcess(fork_url, chain_id=10143) as anvil:
            node = AnvilNode(anvil.rpc_url)
    """

    def __init__(
        self,
        fork_url: str,
        chain_id: int = 10143,
        fork_block: Optional[int] = None,
        anvil_path: str = "anvil",
        base_port: int = 8545,
        host: str = "127.0.0.1",
        startup_timeout: float = 30,
    ):
        """
        Args:
            fork_url: 上游 RPC URL
            chain_id: 分叉链的 chain ID
            fork_block: 分叉区块号（None 为最新区块）
            anvil_path: anvil 可执行文件路径
            base_port: 起始端口
            host: 监听地址
            startup_timeout: 等待节点就绪的时间（秒）
        """
        self.fork_url = fork_url
        self.chain_id = chain_id
        self.fork_block = fork_block
        self.anvil_path = anvil_path
        self.base_port = base_port
        self.host = host
        self.startup_timeout = startup_timeout

        self._process: Optional[subprocess.Popen] = None
        self._process_info: Optional[AnvilProcessInfo] = None

    @property
    def is_running(self) -> bool:
        """检查 Anvil 进程是否运行中"""
        return self._process is not None and self._process.poll() is None

    @property
    def rpc_url(self) -> str:
        """获取 RPC URL"""
        if self._process_info is None:
            raise RuntimeError("Anvil 进程未启动")
        return self._process_info.rpc_url

    def build_command(self, port: int) -> List[str]:
        """构建 anvil 命令行"""
        cmd = [
            self.anvil_path,
            "--fork-url",
            self.fork_url,
            "--chain-id",
            str(self.chain_id),
            "--port",
            str(port),
            "--host",
            self.host,
            "--timeout",
            "600000",
            "--gas-limit",
            "30000000",
            "--code-size-limit",
            "100000",
            "--block-time",
            "1",
            "--no-rate-limit",
        ]
        if self.fork_block is not None:
            cmd.extend(["--fork-block-number", str(self.fork_block)])
        return cmd

    def start(self) -> AnvilProcessInfo:
        """
        启动 Anvil 分叉节点

        Returns:
            AnvilProcessInfo: 进程信息
        """
        if self.is_running:
            return self._process_info

        port = find_free_port(self.base_port)
        rpc_url = f"http://127.0.0.1:{port}"
        cmd = self.build_command(port)

        # 不打印 fork URL，其中可能带有 API key
        logger.info(f"启动 Anvil: port={port} chain_id={self.chain_id} fork_block={self.fork_block}")

        self._process = subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )

        try:
            self._wait_for_ready(rpc_url)
        except RuntimeError:
            self.stop()
            raise

        self._process_info = AnvilProcessInfo(
            pid=self._process.pid,
            port=port,
            rpc_url=rpc_url,
            fork_url=self.fork_url,
            fork_block=self.fork_block,
            chain_id=self.chain_id,
        )

        logger.info(f"Anvil 已启动: {rpc_url} (PID: {self._process.pid})")
        return self._process_info

    def _wait_for_ready(self, rpc_url: str) -> None:
        """等待 Anvil 响应 web3_clientVersion"""
        deadline = time.monotonic() + self.startup_timeout

        while time.monotonic() < deadline:
            if self._process is not None and self._process.poll() is not None:
                raise RuntimeError(f"Anvil 进程意外退出 (code {self._process.returncode})")
            try:
                response = httpx.post(
                    rpc_url,
                    json={
                        "jsonrpc": "2.0",
                        "method": "web3_clientVersion",
                        "params": [],
                        "id": 1,
                    },
                    timeout=1,
                )
                if response.status_code == 200:
                    logger.debug("Anvil 就绪")
                    return
            except httpx.HTTPError:
                pass
            time.sleep(0.1)

        raise RuntimeError(f"Anvil 启动超时: {rpc_url}")

    def stop(self) -> None:
        """停止 Anvil 进程"""
        if self._process is not None:
            try:
                self._process.terminate()
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait()
            self._process = None
            logger.info("Anvil 进程已停止")

        self._process_info = None

    def __enter__(self):
        """上下文管理器入口"""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """上下文管理器退出"""
        self.stop()
