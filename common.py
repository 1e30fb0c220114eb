#!/usr/bin/env python3
#
# Copyright 2019 F5 Networks
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

"""Common utility functions."""

from logging.handlers import SysLogHandler

import sys
import logging
import argparse


def parse_log_level(log_level_arg):
    """Parse the log level from the args.

    Args:
        log_level_arg: String representation of log level
    """
    LOG_LEVELS = ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG']
    if log_level_arg not in LOG_LEVELS:
        msg = 'Invalid option: {0} (Valid choices are {1})'.format(
              log_level_arg, LOG_LEVELS)
        raise argparse.ArgumentTypeError(msg)

    log_level = getattr(logging, log_level_arg, logging.INFO)

    return log_level


def setup_logging(logger, syslog_socket, log_format, log_level):
    """Configure logging."""
    logger.setLevel(log_level)

    formatter = logging.Formatter(log_format)

    consoleHandler = logging.StreamHandler(sys.stdout)
    consoleHandler.setFormatter(formatter)
    logger.addHandler(consoleHandler)
    logger.propagate = False

    if syslog_socket != '/dev/null':
        syslogHandler = SysLogHandler(syslog_socket)
        syslogHandler.setFormatter(formatter)
        logger.addHandler(syslogHandler)


def set_bigip_auth_args(parser):
    """Set the authorization for BIG-IP."""
    parser.add_argument("--bigip-credential-file",
                        env_var='F5_CC_BIGIP_CREDENTIALS',
                        help="Path to file containing a user/pass for "
                        "the BIG-IP management API in the format of "
                        "'user:pass'."
                        )

    return parser


def get_bigip_auth_params(args):
    """Get the BIG-IP credentials from a file."""
    if args.bigip_credential_file is None:
        return None

    line = None
    with open(args.bigip_credential_file, 'r') as f:
        line = f.readline().rstrip('\r\n')

    if line:
        user, _, password = line.partition(':')
        return (user, password)

    return None


def set_logging_args(parser):
    """Add logging-related args to the parser."""
    default_log_socket = "/dev/log"
    if sys.platform == "darwin":
        default_log_socket = "/var/run/syslog"

    parser.add_argument("--syslog-socket",
                        env_var='F5_CC_SYSLOG_SOCKET',
                        help="Socket to write syslog messages to. "
                        "Use '/dev/null' to disable logging to syslog",
                        default=default_log_socket
                        )
    parser.add_argument("--log-format",
                        env_var='F5_CC_LOG_FORMAT',
                        help="Set log message format",
                        default="%(asctime)s %(name)s: %(levelname)"
                        " -8s: %(message)s"
                        )
    parser.add_argument("--log-level",
                        env_var='F5_CC_LOG_LEVEL',
                        type=parse_log_level,
                        help="Set logging level. Valid log levels are: "
                        "DEBUG, INFO, WARNING, ERROR, and CRITICAL",
                        default='INFO'
                        )
    return parser


def split_names(names):
    """Split a comma-separated list of names, dropping blanks."""
    if not names:
        return []
    if isinstance(names, (list, tuple)):
        names = ','.join(names)
    return [n.strip() for n in names.split(',') if n.strip()]


def list_diff(list1, list2):
    """Return the difference between two lists."""
    return sorted(set(list1) - set(list2))


def list_intersect(list1, list2):
    """Return the intersection of two lists."""
    return sorted(set.intersection(set(list1), set(list2)))
