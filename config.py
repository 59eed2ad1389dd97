import logging
import os
from types import MappingProxyType

# Surge 规则类型 -> QuantumultX 规则类型，未列出的类型一律视为不支持
RULE_TYPES = MappingProxyType({
    'DOMAIN': 'host',
    'DOMAIN-SUFFIX': 'host-suffix',
    'DOMAIN-KEYWORD': 'host-keyword',
    'IP-CIDR': 'ip-cidr',
    'IP-CIDR6': 'ip6-cidr',
    'IP-ASN': 'ip-asn',
})


class Config:
    def __init__(self):
        # 日志设置
        self.log_file = 'log.txt'
        self.log_format = '%(asctime)s - %(levelname)s - %(message)s'

        # 规则设置
        self.rule_dir = './rule'
        self.source_dir = './source'
        self.quantumultx_output_directory = os.path.join(self.rule_dir, 'quantumultx')

        # 转换设置
        self.default_policy = 'proxy'
        self.policy_param = 'policy'
        self.domain_set_param = 'domain-set'
        self.comment_prefixes = ('#', '//', ';')
        self.source_keyword = 'surge'  # 源 YAML 中存放 Surge 链接的字段

        # 下载设置
        self.fetch_retries = 3
        self.fetch_delay = 5
        self.fetch_timeout = 30

    def setup_logging(self, log_file=None):
        """清空旧的日志内容并初始化日志输出。"""
        if log_file:
            self.log_file = log_file
        if os.path.exists(self.log_file):
            open(self.log_file, 'w').close()

        logging.basicConfig(filename=self.log_file, level=logging.INFO, format=self.log_format)
