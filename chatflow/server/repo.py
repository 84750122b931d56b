import json, os, re
from typing import Callable, Dict, Iterable, List, Optional
from .models import User, Message, Group, GroupMessage, now_ms
from .errors import StorageUnavailable
from ..utils.logger import setup_logger

logger = setup_logger('chatflow.repo')


def _append_line(path: str, rec: dict):
    """Append one JSON record to a JSONL file and fsync it.

    Raises:
        StorageUnavailable: If the file cannot be written
    """
    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(rec, ensure_ascii=False) + "\n")
            f.flush(); os.fsync(f.fileno())
    except OSError as e:
        logger.error(f"Failed to append to {path}: {e}")
        raise StorageUnavailable(str(e)) from e


def _rewrite(path: str, recs: Iterable[dict]):
    """Rewrite a whole JSONL file.

    This is not efficient for large files but keeps every store a plain
    append-friendly text file. The new content goes to a temp file first
    so a crash mid-write never truncates the data.
    """
    tmp = path + ".tmp"
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            for rec in recs:
                f.write(json.dumps(rec, ensure_ascii=False) + "\n")
            f.flush(); os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError as e:
        logger.error(f"Failed to rewrite {path}: {e}")
        raise StorageUnavailable(str(e)) from e


def _read_lines(path: str) -> Iterable[dict]:
    if not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                yield json.loads(line)
    except OSError as e:
        logger.error(f"Failed to read {path}: {e}")
        raise StorageUnavailable(str(e)) from e


def _ensure_dir(path: str):
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)


class UsersRepo:
    """Repository for managing user data in JSONL format."""

    def __init__(self, path: str):
        """Initialize users repository.

        Args:
            path (str): Path to JSONL file storing user data

        Side Effects:
            - Creates directory structure if not exists
            - Loads existing users from file
        """
        _ensure_dir(path)
        self.path = path
        self.users_by_id: Dict[str, User] = {}
        self._load()

    def _load(self):
        for rec in _read_lines(self.path):
            user = User.from_dict(rec)
            self.users_by_id[user.id] = user

    def _save(self):
        _rewrite(self.path, (u.to_dict() for u in self.users_by_id.values()))

    def append_user(self, user: User):
        """Add new user to repository.

        Side Effects:
            - Appends user to JSONL file
            - Updates in-memory dictionary
        """
        _append_line(self.path, user.to_dict())
        self.users_by_id[user.id] = user
        logger.info(f"New user registered: {user.username} (ID: {user.id})")

    def update(self, user: User):
        self.users_by_id[user.id] = user
        self._save()

    def remove(self, user_id: str) -> bool:
        if self.users_by_id.pop(user_id, None) is None:
            return False
        self._save()
        logger.info(f"User {user_id} deleted")
        return True

    def get(self, user_id: str) -> Optional[User]:
        return self.users_by_id.get(user_id)

    def all(self) -> Iterable[User]:
        return self.users_by_id.values()

    def find_by_email(self, email: str) -> Optional[User]:
        """Find user by email (case insensitive)."""
        email = (email or "").strip().lower()
        for user in self.users_by_id.values():
            if user.email == email:
                return user
        return None

    def find_by_username(self, username: str) -> Optional[User]:
        """Find user by username (case sensitive)."""
        for user in self.users_by_id.values():
            if user.username == username:
                return user
        return None

    def find_by_google_id(self, google_id: str) -> Optional[User]:
        for user in self.users_by_id.values():
            if google_id and user.google_id == google_id:
                return user
        return None


class MessagesRepo:
    """Repository for general, private, group and hotspot message records.

    Messages are kept in insertion order, which is also creation order,
    so "newest first" is simply reverse iteration.
    """

    def __init__(self, path: str):
        _ensure_dir(path)
        self.path = path
        self._messages: List[Message] = []
        self._by_id: Dict[str, Message] = {}
        self._load()

    def _load(self):
        for rec in _read_lines(self.path):
            msg = Message.from_dict(rec)
            self._messages.append(msg)
            self._by_id[msg.id] = msg

    def _save(self):
        _rewrite(self.path, (m.to_dict() for m in self._messages))

    def append(self, m: Message):
        """Append new message to repository.

        Side Effects:
            - Appends message to JSONL file
            - Updates in-memory message list
        """
        _append_line(self.path, m.to_dict())
        self._messages.append(m)
        self._by_id[m.id] = m
        logger.info(f"New {m.type} message saved: {m.id} from {m.sender_email}")

    def get(self, message_id: str) -> Optional[Message]:
        return self._by_id.get(message_id)

    def update(self, m: Message):
        """Persist an in-place mutation of a message already in the repo."""
        m.updated_at = now_ms()
        if m.id not in self._by_id:
            raise KeyError(m.id)
        self._save()
        logger.debug(f"Message {m.id} updated")

    def newest_first(self, predicate: Callable[[Message], bool], skip: int = 0,
                     limit: int = 0) -> List[Message]:
        """Return matching messages newest first, after skipping `skip`.

        Args:
            predicate: Filter applied to every message
            skip (int): Number of matches to skip
            limit (int): Max matches to return, 0 for no limit
        """
        out = []
        skipped = 0
        for msg in reversed(self._messages):
            if not predicate(msg):
                continue
            if skipped < skip:
                skipped += 1
                continue
            out.append(msg)
            if limit and len(out) >= limit:
                break
        return out

    def mark_read(self, sender_id: str, recipient_id: str) -> int:
        """Mark every unread private message from sender to recipient as read.

        Returns:
            int: Number of messages changed
        """
        changed = 0
        for msg in self._messages:
            if (msg.type == "private" and msg.sender_id == sender_id
                    and msg.recipient_id == recipient_id and not msg.is_read):
                msg.is_read = True
                msg.status = "read"
                changed += 1
        if changed:
            self._save()
            logger.info(f"Marked {changed} messages from {sender_id} to {recipient_id} as read")
        return changed

    def count(self, predicate: Callable[[Message], bool]) -> int:
        return sum(1 for m in self._messages if predicate(m))


class GroupsRepo:
    """Repository for managing chat groups and their memberships."""

    def __init__(self, path: str):
        _ensure_dir(path)
        self.path = path
        self.groups_by_id: Dict[str, Group] = {}
        self._load()

    def _load(self):
        for rec in _read_lines(self.path):
            group = Group.from_dict(rec)
            self.groups_by_id[group.id] = group

    def _save(self):
        _rewrite(self.path, (g.to_dict() for g in self.groups_by_id.values()))

    def append(self, group: Group):
        _append_line(self.path, group.to_dict())
        self.groups_by_id[group.id] = group
        logger.info(f"New group created: {group.name} ({group.id}) by {group.created_by}")

    def get_group(self, group_id: str) -> Optional[Group]:
        return self.groups_by_id.get(group_id)

    def get_member_groups(self, email: str) -> List[Group]:
        """Get all groups whose member list contains the email.

        Returns:
            List[Group]: Groups ordered by last activity, most recent first
        """
        groups = [g for g in self.groups_by_id.values() if g.is_member(email)]
        groups.sort(key=lambda g: g.last_activity, reverse=True)
        return groups

    def touch(self, group_id: str, ts: int):
        group = self.groups_by_id.get(group_id)
        if not group:
            return
        group.last_activity = ts
        self._save()


class GroupMessagesRepo:
    """Append-only repository for named group message streams."""

    def __init__(self, path: str):
        _ensure_dir(path)
        self.path = path
        self._by_group: Dict[str, List[GroupMessage]] = {}
        self._load()

    def _load(self):
        for rec in _read_lines(self.path):
            gm = GroupMessage.from_dict(rec)
            self._by_group.setdefault(gm.group_id, []).append(gm)

    def append(self, gm: GroupMessage):
        _append_line(self.path, gm.to_dict())
        self._by_group.setdefault(gm.group_id, []).append(gm)
        logger.info(f"New {gm.type} group message saved: {gm.id} in group {gm.group_id}")

    def newest_first(self, group_id: str, skip: int = 0, limit: int = 0) -> List[GroupMessage]:
        stream = list(reversed(self._by_group.get(group_id, [])))
        stream = stream[skip:]
        return stream[:limit] if limit else stream

    def count(self, group_id: str) -> int:
        return len(self._by_group.get(group_id, []))


_WORD = re.compile(r"\w+", re.UNICODE)


def tokenize(text: str) -> List[str]:
    return [w.lower() for w in _WORD.findall(text or "")]


class Store:
    """Persistent store used by the messaging core.

    Composes the per-collection JSONL repositories behind the operations
    the core needs. Every method raises StorageUnavailable when the
    underlying file cannot be read or written.
    """

    def __init__(self, data_dir: str):
        self.users = UsersRepo(os.path.join(data_dir, "users.jsonl"))
        self.messages = MessagesRepo(os.path.join(data_dir, "messages.jsonl"))
        self.groups = GroupsRepo(os.path.join(data_dir, "groups.jsonl"))
        self.group_messages = GroupMessagesRepo(os.path.join(data_dir, "group_messages.jsonl"))

    # users

    def find_user_by_email(self, email: str) -> Optional[User]:
        return self.users.find_by_email(email)

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    def find_user_by_username(self, username: str) -> Optional[User]:
        return self.users.find_by_username(username)

    def find_user_by_google_id(self, google_id: str) -> Optional[User]:
        return self.users.find_by_google_id(google_id)

    def all_users(self) -> List[User]:
        return list(self.users.all())

    def create_user(self, user: User) -> User:
        self.users.append_user(user)
        return user

    def update_user(self, user: User) -> User:
        self.users.update(user)
        return user

    def delete_user(self, user_id: str) -> bool:
        return self.users.remove(user_id)

    def update_user_online_status(self, user_id: str, online: bool, ts: Optional[int] = None) -> Optional[User]:
        user = self.users.get(user_id)
        if not user:
            return None
        user.is_online = online
        user.last_seen = ts or now_ms()
        self.users.update(user)
        logger.debug(f"User {user_id} online={online}")
        return user

    # groups

    def find_group_by_id(self, group_id: str) -> Optional[Group]:
        return self.groups.get_group(group_id)

    def find_groups_by_member_email(self, email: str) -> List[Group]:
        return self.groups.get_member_groups(email)

    def create_group(self, group: Group) -> Group:
        self.groups.append(group)
        return group

    def touch_group_activity(self, group_id: str, ts: Optional[int] = None):
        self.groups.touch(group_id, ts or now_ms())

    # messages

    def create_message(self, message: Message) -> Message:
        self.messages.append(message)
        return message

    def find_message(self, message_id: str) -> Optional[Message]:
        return self.messages.get(message_id)

    def update_message(self, message: Message) -> Message:
        self.messages.update(message)
        return message

    def find_messages_by_criteria(self, predicate: Callable[[Message], bool], skip: int = 0,
                                  limit: int = 0) -> List[Message]:
        return self.messages.newest_first(predicate, skip, limit)

    def mark_conversation_read(self, sender_id: str, recipient_id: str) -> int:
        return self.messages.mark_read(sender_id, recipient_id)

    def count_unread(self, recipient_id: str) -> int:
        return self.messages.count(
            lambda m: m.type == "private" and m.recipient_id == recipient_id and not m.is_read)

    def full_text_search_messages(self, terms: List[str], type: Optional[str] = None,
                                  participant_id: Optional[str] = None, limit: int = 20) -> List[Message]:
        """Word match over non-deleted message content.

        A message matches when any term occurs as a word in its content.
        Results are ordered by number of matched terms, then newest first.

        Args:
            terms: Lowercased search terms
            type: Restrict to one message type
            participant_id: Restrict to messages sent or received by this user
            limit: Max results
        """
        wanted = set(terms)
        scored = []
        for position, msg in enumerate(self.messages.newest_first(lambda m: not m.is_deleted)):
            if type and msg.type != type:
                continue
            if participant_id and participant_id not in (msg.sender_id, msg.recipient_id):
                continue
            score = len(wanted.intersection(tokenize(msg.content)))
            if score:
                scored.append((-score, position, msg))
        scored.sort(key=lambda t: (t[0], t[1]))
        return [msg for _, _, msg in scored[:limit]]

    # group messages

    def create_group_message(self, gm: GroupMessage) -> GroupMessage:
        self.group_messages.append(gm)
        return gm

    def find_group_messages(self, group_id: str, skip: int = 0, limit: int = 0) -> List[GroupMessage]:
        """Group stream, newest first."""
        return self.group_messages.newest_first(group_id, skip, limit)

    def count_group_messages(self, group_id: str) -> int:
        return self.group_messages.count(group_id)
