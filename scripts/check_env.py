#!/usr/bin/env python3
"""
QuoteBench Environment Check Script

检查运行 QuoteBench 所需的环境依赖：
1. Python 版本 >= 3.10
2. Foundry/Anvil 是否安装
3. 必要的 Python 包
4. 上游 RPC 与分叉节点的连通性
"""

import importlib
import importlib.util
import os
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Tuple


class Colors:
    """终端颜色输出"""
    GREEN = "\033[92m"
    RED = "\033[91m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    BOLD = "\033[1m"
    RESET = "\033[0m"


def print_header(text: str) -> None:
    print(f"\n{Colors.BLUE}{Colors.BOLD}=== {text} ==={Colors.RESET}")


def print_success(text: str) -> None:
    print(f"{Colors.GREEN}✓ {text}{Colors.RESET}")


def print_error(text: str) -> None:
    print(f"{Colors.RED}✗ {text}{Colors.RESET}")


def print_warning(text: str) -> None:
    print(f"{Colors.YELLOW}⚠ {text}{Colors.RESET}")


def check_python_version() -> Tuple[bool, str]:
    """检查 Python 版本"""
    version = sys.version_info
    label = f"Python {version.major}.{version.minor}.{version.micro}"
    if version >= (3, 10):
        return True, label
    return False, f"{label} (需要 >= 3.10)"


def check_command_exists(command: str) -> Tuple[bool, str]:
    """检查命令是否存在并读取版本"""
    try:
        result = subprocess.run(
            [command, "--version"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except FileNotFoundError:
        return False, f"{command}: 未找到"
    except subprocess.TimeoutExpired:
        return False, f"{command}: 检查超时"

    if result.returncode != 0:
        return False, f"{command}: 无法运行"
    version = result.stdout.strip().split("\n")[0]
    return True, f"{command}: {version}"


def check_python_package(package: str, import_name: Optional[str] = None) -> Tuple[bool, str]:
    """检查 Python 包是否已安装"""
    import_name = import_name or package
    if importlib.util.find_spec(import_name) is None:
        return False, f"{package}: 未安装"
    try:
        mod = importlib.import_module(import_name)
    except ImportError as e:
        return False, f"{package}: 导入失败 ({e})"
    version = getattr(mod, "__version__", "unknown")
    return True, f"{package}: {version}"


def check_rpc(rpc_url: str, method: str = "eth_blockNumber") -> Tuple[bool, str]:
    """发送一次 JSON-RPC 请求检查连通性"""
    try:
        import httpx
    except ImportError:
        return False, "httpx 未安装，跳过 RPC 检查"

    try:
        response = httpx.post(
            rpc_url,
            json={"jsonrpc": "2.0", "method": method, "params": [], "id": 1},
            timeout=10,
        )
    except httpx.HTTPError as e:
        return False, f"RPC 连接失败: {e}"

    if response.status_code != 200:
        return False, f"RPC 返回错误: {response.status_code}"
    result = response.json().get("result")
    if result is None:
        return False, "RPC 响应缺少 result"
    if method == "eth_blockNumber":
        return True, f"RPC 连接成功 (区块: {int(result, 16)})"
    return True, f"RPC 连接成功 ({result})"


def main():
    print_header("QuoteBench 环境检查")

    all_passed = True
    results: List[Tuple[bool, str]] = []

    # 1. 检查 Python 版本
    print_header("1. Python 版本检查")
    passed, msg = check_python_version()
    results.append((passed, msg))
    if passed:
        print_success(msg)
    else:
        print_error(msg)
        all_passed = False

    # 2. 检查 Foundry/Anvil
    print_header("2. Foundry/Anvil 检查")
    anvil_path = os.environ.get("ANVIL_BINARY_PATH", "anvil")
    for cmd in [anvil_path, "cast"]:
        passed, msg = check_command_exists(cmd)
        results.append((passed, msg))
        if passed:
            print_success(msg)
        elif cmd == anvil_path:
            print_error(msg)
            all_passed = False
        else:
            print_warning(msg)

    # 3. 检查 Python 依赖
    print_header("3. Python 依赖检查")
    packages = [
        ("fastapi", "fastapi"),
        ("uvicorn", "uvicorn"),
        ("web3", "web3"),
        ("eth-abi", "eth_abi"),
        ("pydantic", "pydantic"),
        ("pydantic-settings", "pydantic_settings"),
        ("tenacity", "tenacity"),
        ("httpx", "httpx"),
    ]
    for package, import_name in packages:
        passed, msg = check_python_package(package, import_name)
        results.append((passed, msg))
        if passed:
            print_success(msg)
        else:
            print_error(msg)
            all_passed = False

    # 4. 检查 RPC 连接
    print_header("4. RPC 连接检查")
    upstream = os.environ.get("UPSTREAM_RPC_URL")
    if upstream:
        passed, msg = check_rpc(upstream)
        results.append((passed, msg))
        (print_success if passed else print_error)(f"上游 RPC - {msg}")
        all_passed = all_passed and passed
    else:
        print_error("未设置 UPSTREAM_RPC_URL")
        all_passed = False

    anvil_rpc = os.environ.get("ANVIL_RPC_URL", "http://127.0.0.1:8545")
    passed, msg = check_rpc(anvil_rpc, method="web3_clientVersion")
    results.append((passed, msg))
    if passed:
        print_success(f"分叉节点 {anvil_rpc} - {msg}")
    else:
        # 设置 ANVIL_SPAWN=true 时由服务自行启动
        print_warning(f"分叉节点 {anvil_rpc} - {msg}")

    # 5. 检查项目结构
    print_header("5. 项目结构检查")
    for dir_path in ["quotebench", "quotebench/simulation"]:
        path = Path(__file__).parent.parent / dir_path
        if path.exists():
            print_success(f"{dir_path}/ 存在")
        else:
            print_error(f"{dir_path}/ 不存在")
            all_passed = False

    # 总结
    print_header("检查总结")
    passed_count = sum(1 for p, _ in results if p)
    total_count = len(results)

    if all_passed:
        print_success(f"所有核心检查通过! ({passed_count}/{total_count})")
        print()
        print("下一步:")
        print("  1. 在 .env 中配置 UPSTREAM_RPC_URL")
        print("  2. 启动分叉节点，或设置 ANVIL_SPAWN=true")
        print("  3. 启动服务: quotebench")
        return 0

    print_error(f"部分检查失败 ({passed_count}/{total_count})")
    print()
    print("请安装缺失的依赖:")
    print("  - Foundry: curl -L https://foundry.paradigm.xyz | bash")
    print("  - Python 包: pip install -e .")
    return 1


if __name__ == "__main__":
    sys.exit(main())
