# spreadguard/config.py
import copy
import os
from typing import Any, Dict, Optional

import yaml

# Every key the pipeline reads. config.yaml only needs to override what differs.
DEFAULT_CONFIG: Dict[str, Any] = {
    'system': {
        'log_level': 'INFO',
        'state_file': 'state.json',
        'seed': None,
    },
    'performance': {
        'network_timeout_ms': 5000,
    },
    'supported_symbols': ['BTCUSDT', 'ETHUSDT', 'BNBUSDT', 'SOLUSDT', 'XRPUSDT'],
    'exchanges': {
        'binance': {
            'kind': 'ccxt',
            'ccxt_id': 'binance',
            'volume_weight': 1000000,
            'fee_rate': 0.001,
        },
        'wazirx': {
            'kind': 'simulated',
            'reference': 'binance',
            'drift_min': 0.005,
            'drift_max': 0.025,
            'book_spread_min': 0.001,
            'book_spread_max': 0.005,
            'level_qty_min': 0.1,
            'level_qty_max': 5.0,
            'outage': False,
            'fee_rate': 0.002,
            'volume_weight': 100000,
        },
        'nse': {
            'kind': 'simulated',
            'reference': 'binance',
            'drift_min': 0.002,
            'drift_max': 0.01,
            'book_spread_min': 0.0005,
            'book_spread_max': 0.002,
            'level_qty_min': 0.5,
            'level_qty_max': 10.0,
            'outage': False,
            'fee_rate': 0.0003,
            'volume_weight': 500000,
        },
    },
    'discovery': {
        'primary_source': 'binance',
        'history_capacity': 100,
    },
    'detector': {
        'min_spread_pct': 0.5,
        'persistence_ms': 2000,
        'min_persistence_count': 2,
        'stale_timeout_ms': 10000,
        'fee_buffer_pct': 0.3,
        'max_buffer_size': None,
        'pairs': [['binance', 'wazirx']],
    },
    'risk': {
        'target_qty': 1.0,
        'default_volatility_pct': 0.5,
        'book_depth': 20,
        'failure_risk_score': 80.0,
    },
    'allocation': {
        'max_trade_amount': 5000.0,
        'max_single_allocation_pct': 0.20,
        'max_total_allocation_pct': 0.80,
        'min_ticket': 100.0,
    },
    'debate': {
        'threshold': 0.6,
        'provider': 'auto',
        'model': 'llama-3.3-70b-versatile',
        'api_url': 'https://api.groq.com/openai/v1/chat/completions',
        'api_key_env': 'GROQ_API_KEY',
        'temperature': 0.3,
        'max_tokens': 600,
    },
    'guardian': {
        'max_trade_pct_of_portfolio': 0.15,
        'daily_max_trades': 30,
        'global_max_exposure_pct': 0.5,
        'veto_conditions': {
            'exchange_outage': True,
            'high_volatility': True,
        },
        'max_volatility_pct': 2.0,
        'max_risk_score': 75.0,
    },
    'execution': {
        'buy_fee_rate': 0.001,
        'sell_fee_rate': 0.002,
        'buy_slippage_min': 0.0001,
        'buy_slippage_max': 0.001,
        'rollback_fill_ratio': 0.9,
        'book_depth': 20,
    },
    'runner': {
        'poll_interval_ms': 2000,
        'symbols': ['BTCUSDT', 'ETHUSDT', 'BNBUSDT'],
    },
    'portfolio': {
        'initial_cash': 100000.0,
    },
    'audit': {
        'trade_log': 'logs/trades.csv',
        'enhanced_capacity': 100,
    },
}


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(path: Optional[str] = "config.yaml", overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Reads the YAML config (if present) on top of DEFAULT_CONFIG.
    The exchange table is replaced, not merged, when the file defines one,
    so a config can drop sources.
    """
    raw: Dict[str, Any] = {}
    if path and os.path.exists(path):
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}

    config = deep_merge(DEFAULT_CONFIG, {k: v for k, v in raw.items() if k != 'exchanges'})
    if 'exchanges' in raw:
        config['exchanges'] = copy.deepcopy(raw['exchanges'])
    if overrides:
        config = deep_merge(config, overrides)
    return config
