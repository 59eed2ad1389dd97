# utils.py

import requests
import re
import yaml
import logging
import os
import time
from urllib.parse import unquote_to_bytes

from config import Config, RULE_TYPES

config = Config()

LINE_ENDINGS = re.compile(r'\r\n|\n|\r')
INVALID_ESCAPE = re.compile(r'%(?![0-9A-Fa-f]{2})')


class ConversionError(Exception):
    """转换流程中会中断整次调用的错误。"""


class FatalInputError(ConversionError):
    """输入内容为空或不是字符串。"""


class HostUnavailableError(ConversionError):
    """宿主环境没有提供 resource 或 done 回调。"""


class ParameterDecodeError(ValueError):
    """URL 参数中的百分号编码无法解码。"""


def decode_component(text):
    """
    严格解码百分号编码，遇到残缺的转义或非 UTF-8 字节时直接抛错。
    与 unquote 不同，这里不会把错误的转义原样保留，也不会把 '+' 当成空格。
    """
    if INVALID_ESCAPE.search(text):
        raise ParameterDecodeError(f"无效的百分号编码: {text!r}")
    try:
        return unquote_to_bytes(text).decode('utf-8')
    except UnicodeDecodeError as e:
        raise ParameterDecodeError(f"无效的百分号编码: {text!r}") from e


def parse_url_parameters(url):
    """
    解析 URL 片段（# 之后）中的参数，返回 {参数名: 参数值}。
    没有片段时返回空字典；同名参数以最后一次出现为准。
    """
    if not url or not isinstance(url, str):
        return {}

    fragment_index = url.find('#')
    if fragment_index == -1:
        return {}

    fragment = url[fragment_index + 1:]
    if not fragment:
        return {}

    params = {}
    for pair in fragment.split('&'):
        if not pair:
            continue

        equals_index = pair.find('=')
        if equals_index == -1:
            # 只有键没有值的参数，例如 #domain-set
            key = decode_component(pair.strip())
            value = ''
        else:
            key = decode_component(pair[:equals_index].strip())
            value = decode_component(pair[equals_index + 1:].strip())

        if key.strip():
            params[key] = value

    return params


def should_ignore_line(line):
    """空行与注释行（#、//、;）不参与转换。"""
    if not line:
        return True
    return line.startswith(config.comment_prefixes)


def split_lines(content):
    """按 CRLF、LF、CR 统一切分行。"""
    return LINE_ENDINGS.split(content)


def process_domain_set_line(line, policy):
    """
    转换 domain-set 格式的一行。
    .example.com 视为后缀匹配，example.com 视为完整匹配；无法转换时返回 None。
    """
    if not line:
        return None

    if line.startswith('.'):
        domain = line[1:]
        if not domain:
            logging.warning(f"无效的 domain-set 后缀规则: \"{line}\"")
            return None
        return f"host-suffix,{domain},{policy}"

    return f"host,{line},{policy}"


def process_standard_rule(line, policy):
    """
    转换标准 Surge 规则（TYPE,target[,...]）。
    第二个字段之后的内容（如 no-resolve、原策略）直接丢弃；无法转换时返回 None。
    """
    parts = line.split(',')

    if len(parts) < 2:
        logging.warning(f"规则格式无效: \"{line}\"，至少需要 2 个逗号分隔的字段")
        return None

    rule_type = parts[0].strip().upper()
    target = parts[1].strip()

    if not rule_type or not target:
        logging.warning(f"规则格式无效: \"{line}\"，规则类型或目标为空")
        return None

    quantumult_type = RULE_TYPES.get(rule_type)
    if quantumult_type is None:
        logging.warning(f"不支持的规则类型: \"{rule_type}\"，所在行: \"{line}\"")
        return None

    return f"{quantumult_type},{target},{policy}"


def build_error_content(message, original_content):
    """致命错误时的兜底输出：错误说明 + 原始内容。"""
    return f"# Error: {message}\n# Original content preserved below\n{original_content or ''}"


def fetch_rule_content(link, retries=None, delay=None, timeout=None):
    """
    下载规则文本，失败时按配置重试；最终失败返回 None。
    """
    retries = config.fetch_retries if retries is None else retries
    delay = config.fetch_delay if delay is None else delay
    timeout = config.fetch_timeout if timeout is None else timeout

    for attempt in range(retries):
        try:
            response = requests.get(link, timeout=timeout)
            response.raise_for_status()
            logging.debug(f"获取到的原始数据: {response.text[:500]}")
            return response.text
        except requests.exceptions.RequestException as e:
            logging.error(f"请求 {link} 失败: {e}")
            if attempt < retries - 1:
                time.sleep(delay)

    logging.error(f"已达到最大重试次数 ({retries})，放弃下载 {link}")
    return None


def load_source_yaml(yaml_file_path):
    """读取源 YAML 文件，返回其中的字典数据。"""
    with open(yaml_file_path, 'r', encoding='utf-8') as file:
        try:
            data = yaml.safe_load(file)
        except yaml.YAMLError as e:
            raise ValueError(f"解析源文件 {yaml_file_path} 时出错: {e}") from e
        logging.debug(f"解析的 YAML 数据: {data}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"源文件 {yaml_file_path} 不是 YAML 映射")
    return data


def write_rule_file(output_path, rules):
    """写入 QuantumultX 规则文件，每行一条规则。"""
    os.makedirs(os.path.dirname(output_path) or '.', exist_ok=True)
    with open(output_path, 'w', encoding='utf-8') as f:
        for rule in rules:
            f.write(f"{rule}\n")
