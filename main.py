import argparse
import concurrent.futures
import logging
import os
import shutil
import sys
from dataclasses import asdict, dataclass, field
from typing import Optional

from config import Config
from utils import (
    ConversionError,
    FatalInputError,
    HostUnavailableError,
    build_error_content,
    fetch_rule_content,
    load_source_yaml,
    parse_url_parameters,
    process_domain_set_line,
    process_standard_rule,
    should_ignore_line,
    split_lines,
    write_rule_file,
)

config = Config()


@dataclass(frozen=True)
class ConversionOptions:
    policy: str = config.default_policy
    use_domain_set: bool = False


@dataclass
class ConversionStats:
    """单次转换的行数统计，total_lines = processed + skipped + error。"""

    total_lines: int = 0
    processed_lines: int = 0
    skipped_lines: int = 0
    error_lines: int = 0


@dataclass
class ConversionResult:
    content: str
    stats: ConversionStats = field(default_factory=ConversionStats)


@dataclass
class Resource:
    """宿主提供的输入：link 的片段里带参数，content 是待转换的原始规则。"""

    link: str = ''
    content: Optional[str] = None


def resolve_options(link):
    """从 link 的 URL 片段读取 policy 与 domain-set 参数。"""
    params = parse_url_parameters(link)
    policy = params.get(config.policy_param) or config.default_policy
    use_domain_set = params.get(config.domain_set_param) == 'true'
    return ConversionOptions(policy=policy, use_domain_set=use_domain_set)


class RuleConverter:
    def __init__(self):
        self.config = config

    def convert_rules(self, content, policy=None, use_domain_set=False):
        """
        将 Surge 规则文本转换为 QuantumultX 规则文本。
        单行出错只计数并记录日志，不会中断整体转换；只有输入本身无效时才抛出 FatalInputError。
        """
        if policy is None:
            policy = self.config.default_policy

        if not content or not isinstance(content, str):
            raise FatalInputError("内容必须是非空字符串")

        # 带 BOM 的 UTF-8 文件读入后首字符为 \ufeff，str.strip() 不会去掉
        lines = split_lines(content.lstrip('\ufeff'))
        converted_rules = []
        stats = ConversionStats(total_lines=len(lines))

        for raw_line in lines:
            line = raw_line.strip()

            if should_ignore_line(line):
                stats.skipped_lines += 1
                continue

            try:
                if use_domain_set:
                    converted_rule = process_domain_set_line(line, policy)
                else:
                    converted_rule = process_standard_rule(line, policy)
            except Exception as e:
                logging.error(f"处理行 \"{line}\" 时出错: {e}")
                stats.error_lines += 1
                continue

            if converted_rule:
                converted_rules.append(converted_rule)
                stats.processed_lines += 1
            else:
                stats.error_lines += 1

        logging.info(
            f"转换完成: {stats.processed_lines} 条规则已转换, "
            f"{stats.skipped_lines} 行跳过, {stats.error_lines} 行出错"
        )
        return ConversionResult(content='\n'.join(converted_rules), stats=stats)

    def convert_link(self, link, content=None):
        """
        按 link 片段中的参数转换规则；未提供 content 时先下载 link。
        下载失败返回 None。
        """
        options = resolve_options(link)
        if content is None:
            content = fetch_rule_content(link)
            if content is None:
                return None
        return self.convert_rules(content, policy=options.policy, use_domain_set=options.use_domain_set)

    def process_source_file(self, yaml_file_path, output_directory):
        """
        处理一个源 YAML 文件：下载其中全部 Surge 链接，逐个转换后合并写入 <name>.list。
        返回合并后的统计信息。
        """
        data = load_source_yaml(yaml_file_path)
        rule_set_name = os.path.splitext(os.path.basename(yaml_file_path))[0]
        links = data.get(self.config.source_keyword) or []
        if isinstance(links, str):
            links = [links]
        elif not isinstance(links, list):
            raise ValueError(f"源文件 {yaml_file_path} 的 {self.config.source_keyword} 必须是链接列表")

        # 只并发下载，转换仍按链接顺序逐个进行
        with concurrent.futures.ThreadPoolExecutor() as executor:
            contents = list(executor.map(fetch_rule_content, links))

        converted_blocks = []
        summary = asdict(ConversionStats())
        summary['failed_links'] = 0

        for link, content in zip(links, contents):
            if content is None:
                summary['failed_links'] += 1
                continue
            try:
                result = self.convert_link(link, content)
            except (ConversionError, ValueError) as e:
                logging.error(f"转换链接 {link} 时出错: {e}")
                summary['failed_links'] += 1
                continue

            if result.content:
                converted_blocks.append(result.content)
            for key, value in asdict(result.stats).items():
                summary[key] += value

        output_path = os.path.join(output_directory, f"{rule_set_name}.list")
        write_rule_file(output_path, converted_blocks)

        logging.info(
            f"{rule_set_name} 规则整理完成:\n"
            f"链接数: {len(links)}，失败链接数: {summary['failed_links']}\n"
            f"总行数: {summary['total_lines']}\n"
            f"  已转换: {summary['processed_lines']}\n"
            f"  已跳过: {summary['skipped_lines']}\n"
            f"  出错: {summary['error_lines']}\n"
            f"{'-' * 50}"
        )
        return summary

    def main(self):
        #### 解析源文件，生成 QuantumultX 规则集
        source_directory = self.config.source_dir
        output_directory = self.config.quantumultx_output_directory
        if not os.path.isdir(source_directory):
            logging.error(f"源目录不存在: {source_directory}")
            return 1

        if os.path.exists(output_directory):
            shutil.rmtree(output_directory)
        os.makedirs(output_directory)

        yaml_files = sorted(f for f in os.listdir(source_directory) if f.endswith('.yaml'))
        for yaml_file in yaml_files:
            print('正在处理{}'.format(yaml_file))
            yaml_file_path = os.path.join(source_directory, yaml_file)
            try:
                self.process_source_file(yaml_file_path, output_directory)
            except (OSError, ValueError) as e:
                logging.error(f"处理源文件 {yaml_file} 时出错: {e}")
        return 0


def run_resource(resource, done, converter=None):
    """
    宿主调用入口：读取 resource，转换后通过 done({"content": ...}) 返回结果。
    任何致命错误都会被转换为带 "# Error:" 头的兜底输出，done 只会被调用一次。
    """
    content = getattr(resource, 'content', None)
    original_content = content if isinstance(content, str) else ''

    try:
        if resource is None:
            raise HostUnavailableError("resource 对象不可用")
        if not callable(done):
            raise HostUnavailableError("done 回调不可用")

        options = resolve_options(resource.link)
        converter = converter or RuleConverter()
        result = converter.convert_rules(
            resource.content, policy=options.policy, use_domain_set=options.use_domain_set
        )
        payload = {'content': result.content}
    except Exception as e:
        logging.error(f"规则转换发生致命错误: {e}")
        payload = {'content': build_error_content(e, original_content)}

    if callable(done):
        done(payload)
    return payload


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="将 Surge 规则转换为 QuantumultX 规则")
    parser.add_argument(
        "--link",
        default="",
        help="规则链接，片段中可带 policy 与 domain-set 参数；为空时按源目录批量处理",
    )
    parser.add_argument(
        "--input",
        default="",
        help="本地规则文件；为空时从 --link 下载",
    )
    parser.add_argument(
        "--output",
        default="",
        help="输出文件；为空时打印到标准输出",
    )
    parser.add_argument(
        "--source-dir",
        default="",
        help=f"批量模式的源 YAML 目录（默认：{config.source_dir}）",
    )
    parser.add_argument(
        "--output-dir",
        default="",
        help=f"批量模式的输出目录（默认：{config.quantumultx_output_directory}）",
    )
    parser.add_argument(
        "--log-file",
        default="",
        help=f"日志文件（默认：{config.log_file}）",
    )
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    if args.source_dir:
        config.source_dir = args.source_dir
    if args.output_dir:
        config.quantumultx_output_directory = args.output_dir
    config.setup_logging(args.log_file or None)

    if not args.link:
        return RuleConverter().main()

    if args.input:
        if not os.path.exists(args.input):
            print(f"[ERROR] 找不到输入文件: {args.input}", file=sys.stderr)
            return 1
        with open(args.input, 'r', encoding='utf-8') as f:
            content = f.read()
    else:
        content = fetch_rule_content(args.link)

    payload = run_resource(Resource(link=args.link, content=content), lambda result: None)
    if args.output:
        write_rule_file(args.output, [payload['content']])
    else:
        print(payload['content'])
    return 0


if __name__ == "__main__":
    sys.exit(main())
