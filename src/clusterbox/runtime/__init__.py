"""Instance runtime: marker files, process group, controller and command server."""

from clusterbox.runtime.command_server import CommandServer, decode_command
from clusterbox.runtime.contracts import (
	Command,
	CommandReply,
	CommandType,
	ControllerState,
	ControllerTransition,
	DisplayItem,
	transition_controller_state,
)
from clusterbox.runtime.controller import Controller
from clusterbox.runtime.files import (
	PIDRecord,
	claim,
	cleanup_stale,
	is_process_alive,
	read_pid_record,
	read_port,
	wait_stopped,
	write_pid_record,
	write_port,
)
from clusterbox.runtime.instance import Instance
from clusterbox.runtime.probe import ProbeResult, ProbeState, probe_command_server
from clusterbox.runtime.process_group import ProcessGroup, kill_process_or_group

__all__ = [
	"Command",
	"CommandReply",
	"CommandServer",
	"CommandType",
	"Controller",
	"ControllerState",
	"ControllerTransition",
	"DisplayItem",
	"Instance",
	"PIDRecord",
	"ProbeResult",
	"ProbeState",
	"ProcessGroup",
	"claim",
	"cleanup_stale",
	"decode_command",
	"is_process_alive",
	"kill_process_or_group",
	"probe_command_server",
	"read_pid_record",
	"read_port",
	"transition_controller_state",
	"wait_stopped",
	"write_pid_record",
	"write_port",
]
