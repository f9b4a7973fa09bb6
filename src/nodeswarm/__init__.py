__version__ = '0.1.0'

from nodeswarm.client import Swarm as Swarm
from nodeswarm.client import SwarmEvent as SwarmEvent
from nodeswarm.client import elect_master as elect_master
from nodeswarm.config import SwarmConfig as SwarmConfig
from nodeswarm.config import TaskOptions as TaskOptions
from nodeswarm.errors import QueueFull as QueueFull
from nodeswarm.errors import RingNotReady as RingNotReady
from nodeswarm.errors import SwarmError as SwarmError
from nodeswarm.errors import TaskDispatchError as TaskDispatchError
from nodeswarm.errors import TaskNotFound as TaskNotFound
from nodeswarm.errors import TaskTimeout as TaskTimeout
from nodeswarm.membership import Node as Node
from nodeswarm.membership import Reconciler as Reconciler
from nodeswarm.providers import create_provider as create_provider
from nodeswarm.ring import HashRing as HashRing
from nodeswarm.tasks import Scheduler as Scheduler
