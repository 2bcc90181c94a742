import re
# Patterns kept in their own file to avoid confusing the LLM (or the parser) when it is pointed at this repo

search_block_pattern = re.compile(
    r"^[ \t]*<{7}[ \t]*(?:SEARCH|ORIGINAL|BEFORE|HEAD)?[^\n]*\n"
    r"(.*?)(?:\r?\n)?"               # Empty search half is allowed (new file)
    r"^[ \t]*={7}[ \t]*\r?\n"
    r"(.*?)(?:\r?\n)?"
    r"^[ \t]*>{7}[ \t]*(?:REPLACE|UPDATED|AFTER)?[^\n]*$",
    re.MULTILINE | re.DOTALL
)

search_block_start_pattern = re.compile(r"^[ \t]*<{7}(?:[ \t]+\S.*)?$")

hunk_header_pattern = re.compile(
    r"^@@\s+-(\d+)(?:,(\d+))?\s+\+(\d+)(?:,(\d+))?\s+@@.*$"
)

loose_hunk_header_pattern = re.compile(r"^@@.*@@")

diff_header_pattern = re.compile(r"^(---|\+\+\+)\s+(.+?)\s*$")

git_diff_header_pattern = re.compile(r'^diff --git "?a/(.+?)"? "?b/(.+?)"?\s*$')

truncation_pattern = re.compile(
    r"^\s*(?://|#|--|;|<!--|\{/\*|/\*)\s*"
    r"(?:\.{3,}|…|(?:\(|\[)?\s*(?:unchanged|omitted)\b|(?:the )?(?:rest|remainder) of\b.*\b(?:unchanged|same|omitted|code|file)\b|(?:existing|remaining|other)\b.*\b(?:unchanged|remains?(?: the same)?|omitted)\b)"
    r".*$",
    re.IGNORECASE
)

relevant_files_heading_pattern = re.compile(
    r"^\s*\*\*\s*relevant files\s*:?\s*\*\*\s*:?\s*$",
    re.IGNORECASE
)

relevant_files_item_pattern = re.compile(
    r"^\s*[-*]\s+(?:`([^`]+)`|(\S+))"
)

file_heading_pattern = re.compile(
    r"^\s*#{1,6}\s*(?:\*\*)?\s*(New|Updated|Modified|Changed|Deleted|Removed|Renamed)\s+file\s*:?\s*(?:\*\*)?\s*(.*)$",
    re.IGNORECASE
)

xml_path_pattern = re.compile(r"<([\w-]+)\s+path=[\"']([^\"']+)[\"']")

fence_attribute_pattern = re.compile(r"(?:path|name)=(?:\"([^\"]+)\"|'([^']+)'|(\S+))")

comment_path_pattern = re.compile(
    r"^\s*(?://|#|--|/\*|\*|<!--)\s*(?:file(?:name)?\s*:\s*)?([\w@./\\:-]+?)\s*(?:\*/|-->)?\s*$",
    re.IGNORECASE
)

html_comment_path_pattern = re.compile(r"^\s*<!--\s*(?:file:/?)?(.*?)\s*-->\s*$")

workspace_scope_pattern = re.compile(r"^([A-Za-z0-9_.\- ]+?):(?![/\\])(.+)$")

description_counter_pattern = re.compile(r"^\((\d+)\)(?:\s+(.*))?$", re.DOTALL)

